"""
Runtime drivers translate topology operations into container engine calls.

Every operation takes an explicit timeout. Drivers raise RuntimeDriverError on
failure and flag failures worth retrying as transient; retrying is done here,
below the fault controller, with helpers.retry.
"""
import abc
import shlex
from logzero import logger
from os.path import expanduser

from chaosnet.common import (
    DEFAULT_CHAOSNET_DOCKER_BINARY,
    DEFAULT_CHAOSNET_DRIVER_RETRIES,
    DEFAULT_CHAOSNET_DRIVER_TIMEOUT,
    DEFAULT_CHAOSNET_RETRY_BACKOFF,
    DEFAULT_CHAOSNET_STOP_GRACE_PERIOD,
)
from chaosnet.common.errors import RuntimeDriverError
from chaosnet.execute.execute import FabricExecutor, LocalExecutor
from chaosnet.helpers import Deadline, retry
from chaosnet.topology import Node, VirtualNetwork

from typing import List

# Lower case fragments of engine error output that are worth retrying
TRANSIENT_MARKERS = [
    'network busy',
    'is already in progress',
    'timed out',
    'timeout',
    'connection reset',
    'connection refused',
    'temporarily unavailable',
    'try again',
    'i/o timeout',
    'cannot connect to the docker daemon',
]


def is_transient(stderr: str) -> bool:
    text = (stderr or '').lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


class RuntimeDriver(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def create_network(self, network: VirtualNetwork, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def remove_network(self, network: VirtualNetwork, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def create_node(self, node: Node, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def remove_node(self, node: Node, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def start_node(self, node: str, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def stop_node(self, node: str, graceful: bool = True,
                  timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def attach_network(self, node: str, network: str, address: str,
                       timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def detach_network(self, node: str, network: str, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def set_latency(self, node: str, network: str, address: str,
                    delay_ms: int, timeout=None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def clear_latency(self, node: str, network: str, address: str,
                      timeout=None) -> None:
        raise NotImplementedError


class DockerDriver(RuntimeDriver):
    """
    Drive a docker engine through its command line client.

    Container and network names are prefixed with the run id so independent
    runs never share engine objects.

    :param run_id: Prefix for every container and network this driver creates.
    :type run_id: str
    :param executor: Where docker commands run. Defaults to a LocalExecutor.
    :type executor: chaosnet.execute.execute.RemoteExecutor
    :param host: Docker host passed to the executor (ssh alias or hostname
        when using a FabricExecutor).
    :type host: str
    """

    def __init__(self, run_id: str, executor=None, host: str = 'localhost',
                 docker: str = DEFAULT_CHAOSNET_DOCKER_BINARY,
                 timeout=DEFAULT_CHAOSNET_DRIVER_TIMEOUT,
                 retries: int = DEFAULT_CHAOSNET_DRIVER_RETRIES,
                 backoff=DEFAULT_CHAOSNET_RETRY_BACKOFF,
                 as_sudo: bool = False, **execute_kwargs):
        self.run_id = run_id
        self.executor = executor or LocalExecutor()
        self.host = host
        self.docker = docker
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.as_sudo = as_sudo
        self.execute_kwargs = execute_kwargs

    @classmethod
    def for_host(cls, run_id: str, host: str = None,
                 ssh_config_file: str = None, identity_file: str = None,
                 user: str = None, **kwargs):
        """
        Build a driver for the local engine (host is None) or for the engine
        on a remote docker host reached over ssh.
        """
        if not host:
            return cls(run_id, executor=LocalExecutor(), **kwargs)
        if ssh_config_file:
            ssh_config_file = expanduser(ssh_config_file)
        executor = FabricExecutor(ssh_config_file=ssh_config_file)
        execute_kwargs = {}
        if identity_file:
            execute_kwargs['identity_file'] = expanduser(identity_file)
        if user:
            execute_kwargs['user'] = user
        execute_kwargs.update(kwargs.pop('execute_kwargs', {}))
        return cls(run_id, executor=executor, host=host, **kwargs,
                   **execute_kwargs)

    def container_name(self, node: str) -> str:
        return "{}-{}".format(self.run_id, node)

    def network_name(self, network: str) -> str:
        return "{}-{}".format(self.run_id, network)

    def _docker(self, args: List[str], timeout=None, description: str = None,
                ok_markers: List[str] = None) -> str:
        """
        Run a docker command, retrying transient failures. Attempts and the
        backoff between them all fit in one timeout.

        :param ok_markers: Lower case stderr fragments that mean the desired
            state already holds (e.g. "is not connected"). Such failures are
            treated as success.
        :return: str stdout
        """
        command = " ".join([self.docker] + [shlex.quote(str(a)) for a in args])
        timeout = self.timeout if timeout is None else timeout
        description = description or command
        deadline = Deadline(timeout)

        def attempt():
            remaining = deadline.remaining()
            call_timeout = timeout if remaining is None else remaining
            logger.debug("docker: %s (timeout %ss)", command, call_timeout)
            result = self.executor.execute(self.host, command,
                                           as_sudo=self.as_sudo,
                                           timeout=call_timeout,
                                           **self.execute_kwargs)
            if result.return_code != 0:
                stderr = (result.stderr or '').strip()
                if ok_markers and any(m in stderr.lower() for m in ok_markers):
                    logger.debug("Ignoring benign docker error: %s", stderr)
                    return result.stdout
                raise RuntimeDriverError(
                    "{} failed with return code {}: {}".format(
                    description, result.return_code, stderr),
                    transient=is_transient(stderr), command=command,
                    stderr=stderr)
            return result.stdout

        return retry(attempt, self.retries, self.backoff, description,
                     deadline=deadline)

    def create_network(self, network: VirtualNetwork, timeout=None) -> None:
        args = ['network', 'create', '--driver', 'bridge',
                '--subnet', str(network.subnet),
                '--label', 'chaosnet.run={}'.format(self.run_id)]
        if network.internal:
            args.append('--internal')
        args.append(self.network_name(network.name))
        self._docker(args, timeout, "create network {}".format(network.name))

    def remove_network(self, network: VirtualNetwork, timeout=None) -> None:
        self._docker(['network', 'rm', self.network_name(network.name)],
                     timeout, "remove network {}".format(network.name),
                     ok_markers=['not found', 'no such network'])

    def create_node(self, node: Node, timeout=None) -> None:
        """
        Create (without starting) the container and connect it to all of its
        networks with their reserved addresses.
        """
        networks = list(node.addresses.items())
        args = ['create', '--name', self.container_name(node.name),
                '--hostname', node.name,
                '--cap-add', 'NET_ADMIN',
                '--label', 'chaosnet.run={}'.format(self.run_id)]
        if networks:
            first_network, first_address = networks[0]
            args += ['--network', self.network_name(first_network),
                     '--ip', first_address,
                     '--network-alias', node.name]
        for key, value in sorted(node.environment.items()):
            args += ['--env', '{}={}'.format(key, value)]
        for port in node.ports:
            args += ['--publish', str(port)]
        args.append(node.image)
        if isinstance(node.command, str):
            args += shlex.split(node.command)
        elif node.command:
            args += list(node.command)
        self._docker(args, timeout, "create node {}".format(node.name))
        for network, address in networks[1:]:
            self.attach_network(node.name, network, address, timeout)

    def remove_node(self, node: Node, timeout=None) -> None:
        self._docker(['rm', '--force', self.container_name(node.name)],
                     timeout, "remove node {}".format(node.name),
                     ok_markers=['no such container'])

    def start_node(self, node: str, timeout=None) -> None:
        self._docker(['start', self.container_name(node)], timeout,
                     "start node {}".format(node))

    def stop_node(self, node: str, graceful: bool = True,
                  timeout=None) -> None:
        if graceful:
            args = ['stop', '--time', str(DEFAULT_CHAOSNET_STOP_GRACE_PERIOD),
                    self.container_name(node)]
        else:
            args = ['kill', self.container_name(node)]
        self._docker(args, timeout, "{} node {}".format(
                     "stop" if graceful else "kill", node),
                     ok_markers=['is not running'])

    def attach_network(self, node: str, network: str, address: str,
                       timeout=None) -> None:
        self._docker(['network', 'connect', '--ip', address,
                      '--alias', node,
                      self.network_name(network), self.container_name(node)],
                     timeout, "attach node {} to {}".format(node, network),
                     ok_markers=['already exists in network'])

    def detach_network(self, node: str, network: str, timeout=None) -> None:
        self._docker(['network', 'disconnect', self.network_name(network),
                      self.container_name(node)],
                     timeout, "detach node {} from {}".format(node, network),
                     ok_markers=['is not connected'])

    @staticmethod
    def _interface_lookup(address: str) -> str:
        # Name of the interface holding address inside the container
        return "$(ip -o -4 addr show | awk '$4 ~ /^{}\\// {{print $2}}')".format(
               address.replace('.', '\\.'))

    def set_latency(self, node: str, network: str, address: str,
                    delay_ms: int, timeout=None) -> None:
        script = "tc qdisc replace dev {} root netem delay {}ms".format(
                 self._interface_lookup(address), int(delay_ms))
        self._docker(['exec', self.container_name(node), 'sh', '-c', script],
                     timeout, "delay node {} on {} by {}ms".format(
                     node, network, delay_ms))

    def clear_latency(self, node: str, network: str, address: str,
                      timeout=None) -> None:
        script = "tc qdisc del dev {} root".format(
                 self._interface_lookup(address))
        self._docker(['exec', self.container_name(node), 'sh', '-c', script],
                     timeout, "clear delay of node {} on {}".format(
                     node, network),
                     ok_markers=['no such file or directory',
                                 'cannot delete qdisc with handle of zero'])
