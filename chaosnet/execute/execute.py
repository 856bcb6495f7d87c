import abc
import os

from collections import namedtuple

from logzero import logger
from multiprocessing import Process, Queue
from queue import Empty

from fabric import Connection, Config
from invoke import run as invoke_run
from invoke.exceptions import CommandTimedOut
from paramiko import AuthenticationException

from chaosnet.common.errors import RuntimeDriverError

Result = namedtuple('Result', ['return_code', 'stdout', 'stderr'])


class RemoteExecutor(metaclass=abc.ABCMeta):
    def execute(self, host: str, action: str, user: str = None, as_sudo=False, **kwargs) -> Result:
        logger.debug("execute on %s: %s", host, action)
        rtn = self._execute_on_host(host, action, user=user, as_sudo=as_sudo, **kwargs)
        return rtn

    @abc.abstractmethod
    def _execute_on_host(self, host: str, action: str, user: str = None, as_sudo=False) -> Result:
        raise NotImplementedError('users must define _execute_on_host to use this base class')


class LocalExecutor(RemoteExecutor):
    """
    Runs actions on this machine. The host argument is ignored.
    """

    def _execute_on_host(self, host: str, action: str, user: str = None, as_sudo=False, timeout=10,
                         **kwargs) -> Result:
        if as_sudo:
            action = "sudo -n {}".format(action)
        try:
            rtn = invoke_run(action, hide=True, warn=True, timeout=timeout, in_stream=False)
        except CommandTimedOut as e:
            raise RuntimeDriverError("Local execution has exceeded timeout of {}s".format(timeout),
                                     transient=True, command=action, stderr=e.result.stderr)
        return Result(rtn.return_code, rtn.stdout, rtn.stderr)


class FabricExecutor(RemoteExecutor):
    @staticmethod
    def _multiprocess_execute_on_host(q, host, action, config, user=None, as_sudo=False, connect_kwargs=None):
        with Connection(host, config=config, user=user, connect_kwargs=connect_kwargs) as c:
            if as_sudo:
                rtn = c.sudo(action, hide=True, warn=True)
            else:
                rtn = c.run(action, hide=True, warn=True)

            q.put(Result(rtn.return_code, rtn.stdout, rtn.stderr))

    config = None

    def __init__(self, ssh_config_file=None):
        self.config = FabricExecutor._create_config(ssh_config_file=ssh_config_file)

    @staticmethod
    def _create_config(ssh_config_file=None):
        if ssh_config_file:
            FabricExecutor._is_readable_file(ssh_config_file, 'ssh_config')
        return Config(runtime_ssh_path=ssh_config_file)

    @staticmethod
    def _is_readable_file(path, file_kind):
        if not isinstance(path, str):
            raise ValueError("path to file must be a string")

        if os.access(path, os.R_OK):
            if os.path.isfile(path):
                return
            else:
                raise OSError("Path is not to a file -- '%s'" % str(path))
        else:
            raise OSError("Unable to access the file (not readable) -- %s -- '%s'" % (file_kind, path))

    @staticmethod
    def _collect_connect_kwargs(identity_file):
        connect_kwargs = {}

        if identity_file:
            FabricExecutor._is_readable_file(identity_file, 'identity_file')
            connect_kwargs['key_filename'] = identity_file

        if not connect_kwargs:
            connect_kwargs = None

        return connect_kwargs

    def _execute_on_host(self, host: str, action: str, user: str = None, as_sudo=False, identity_file=None,
                         timeout=10) -> Result:
        connect_kwargs = self._collect_connect_kwargs(identity_file)

        p = None
        q = Queue()
        try:
            # Running execution in a subprocess - Did this to avoid errors in paramiko clean up.
            # It also bounds the call: a hung ssh session is terminated at timeout.
            p = Process(target=FabricExecutor._multiprocess_execute_on_host,
                        args=(q, host, action, self.config),
                        kwargs={'user': user, "as_sudo": as_sudo, "connect_kwargs": connect_kwargs})
            p.start()
            p.join(timeout=timeout)
            if p.is_alive():
                raise RuntimeDriverError("Remote execution on {} has exceeded timeout of {}s".format(host, timeout),
                                         transient=True, command=action)
            rtn = q.get(timeout=0.1)
        except AuthenticationException as e:
            raise RuntimeDriverError("Authentication to {} failed: {}".format(host, e), command=action)
        except Empty:
            raise RuntimeDriverError("Remote execution on {} did not provide results".format(host),
                                     transient=True, command=action)
        finally:
            if p:
                p.terminate()

        return rtn
