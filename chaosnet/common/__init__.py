import shutil
import tempfile
from collections import namedtuple
from enum import Enum
from logzero import logger
from os import makedirs
from psutil import AccessDenied, NoSuchProcess, Process

from chaosnet.common.errors import ConfigError

from typing import Dict, Union


def get_chaos_temp_dir() -> str:
    """
    Create a temporary directory unique to each chaosnet invocation.

    The temporary directory will take the form <tempdir>/chaosnet.<pid>
    The <pid> will be the pid of the 'run.py' (or 'chaosnet') process iff it
    exists. Otherwise, the current process's pid. Worker processes spawned to
    run scenarios in parallel therefore share the directory of their parent.

    :return: str
    """
    # Get current process info
    myp = Process()
    subprocess_pid = myp.pid
    chaos_pid = None
    # Walk all the way up the process tree
    while(1):
        try:
            cmdline = " ".join(myp.cmdline())
        except (AccessDenied, NoSuchProcess):
            cmdline = ""
        #  Break when we find the process that launched the scenarios
        if myp.name() == 'chaosnet' or 'run.py' in cmdline:
            logger.debug("Found chaosnet process")
            chaos_pid = myp.pid
            break
        try:
            parent = myp.ppid()
            if not parent:
                raise NoSuchProcess(parent)
            myp = Process(parent)
        except NoSuchProcess:
            logger.debug("Did not find chaosnet pid before traversing all " \
                         "the way to the top of the process tree! " \
                         "Defaulting to %s", subprocess_pid)
            chaos_pid = subprocess_pid
            break

    logger.debug("subprocess pid: %s chaos pid: %s", subprocess_pid, chaos_pid)
    tempdir_path = "{}/chaosnet.{}".format(tempfile.gettempdir(), chaos_pid)
    makedirs(tempdir_path, exist_ok=True)
    logger.debug("tempdir: %s", tempdir_path)
    return tempdir_path


def remove_chaos_temp_dir(cleanup: bool = True) -> bool:
    """
    Remove the chaos temp directory created by get_chaos_temp_dir

    :param cleanup: Perform the cleanup task?
    :type cleanup: bool
        Optional. (Default: True)
    :return: bool
    """
    temp_dir = get_chaos_temp_dir()
    if cleanup:
        logger.debug("Recursively deleting %s", temp_dir)
        try:
            shutil.rmtree(temp_dir)
        except OSError as e:
            logger.error("Failed to recursively delete the contents of %s",
                         temp_dir)
            logger.exception(e)
            return False
    else:
        logger.info("Skip removal of %s.", temp_dir)
    return True


class NodeState(Enum):
    """
    Lifecycle of a node (container) in a topology.
    """
    # Declared, not yet realized by the runtime driver
    PLANNED = 1
    RUNNING = 2
    # Killed without removal. Identity and addresses stay reserved.
    CRASHED = 3
    STOPPED = 4
    RESTARTING = 5

    @classmethod
    def has_value(cls, value):
        return any(value == item.value for item in cls)


class StepKind(Enum):
    """
    All supported scenario step kinds. The value is the spelling used in
    scenario files.
    """
    CLIENT_CALL = 'client_call'
    APPLY_FAULT = 'apply_fault'
    REVERT_FAULT = 'revert_fault'
    WAIT_FOR_CONVERGENCE = 'wait_for_convergence'
    ASSERT = 'assert'
    PAUSE = 'pause'

    @classmethod
    def has_value(cls, value):
        return any(value == item.value for item in cls)


class StepState(Enum):
    """
    Per step state machine: PENDING -> RUNNING -> SUCCEEDED|FAILED|TIMED_OUT

    SKIPPED marks steps that never left PENDING because the scenario halted.
    """
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'
    SKIPPED = 'skipped'

    @classmethod
    def has_value(cls, value):
        return any(value == item.value for item in cls)


class Verdict(Enum):
    PASSED = 'passed'
    FAILED = 'failed'


# Useful for validating boolean user input
true_list = [
   'true', '1', 't', 'y', 'yes'
]
false_list = [
   'false', '0', 'f', 'n', 'no'
]


# Chaosnet defaults
# Please keep defaults in lexically acending order by name
DEFAULT_CHAOSNET_CLIENT_TIMEOUT=5
DEFAULT_CHAOSNET_DOCKER_BINARY="docker"
DEFAULT_CHAOSNET_DRIVER_RETRIES=3
DEFAULT_CHAOSNET_DRIVER_TIMEOUT=30
DEFAULT_CHAOSNET_KEEP_TOPOLOGY=False
DEFAULT_CHAOSNET_KV_PATH="/kv/{key}"
DEFAULT_CHAOSNET_MAX_PROBE_ERRORS=10
DEFAULT_CHAOSNET_POLL_INTERVAL=0.5
DEFAULT_CHAOSNET_RETRY_BACKOFF=0.5
DEFAULT_CHAOSNET_SCENARIO_TIMEOUT=600
DEFAULT_CHAOSNET_SSH_CONFIG_FILE="~/.ssh/config"
DEFAULT_CHAOSNET_STEP_TIMEOUT=30
DEFAULT_CHAOSNET_STOP_GRACE_PERIOD=10


Settings = namedtuple('Settings', ['client_timeout', 'driver_retries',
                                   'driver_timeout', 'keep_topology',
                                   'max_probe_errors', 'poll_interval',
                                   'retry_backoff', 'scenario_timeout',
                                   'step_timeout'])

DEFAULT_SETTINGS = Settings(
    client_timeout=DEFAULT_CHAOSNET_CLIENT_TIMEOUT,
    driver_retries=DEFAULT_CHAOSNET_DRIVER_RETRIES,
    driver_timeout=DEFAULT_CHAOSNET_DRIVER_TIMEOUT,
    keep_topology=DEFAULT_CHAOSNET_KEEP_TOPOLOGY,
    max_probe_errors=DEFAULT_CHAOSNET_MAX_PROBE_ERRORS,
    poll_interval=DEFAULT_CHAOSNET_POLL_INTERVAL,
    retry_backoff=DEFAULT_CHAOSNET_RETRY_BACKOFF,
    scenario_timeout=DEFAULT_CHAOSNET_SCENARIO_TIMEOUT,
    step_timeout=DEFAULT_CHAOSNET_STEP_TIMEOUT,
)


def to_bool(value: Union[str, bool, int]) -> bool:
    """
    Coerce user input (scenario file or command line) to a bool.

    :param value: A bool, an int or one of the strings in true_list/false_list
        (case insensitive).
    :type value: Union[str, bool, int]
    :return: bool
    """
    if isinstance(value, bool):
        return value
    if str(value).lower() in true_list:
        return True
    if str(value).lower() in false_list:
        return False
    raise ConfigError("Boolean value (yes, no, true, false, y, n, 1, or 0) " \
                      "expected. Got >{}<".format(value))


# Settings that only make sense as whole numbers. All other numeric settings
# are seconds and may be fractional.
_COUNT_SETTINGS = ['driver_retries', 'max_probe_errors']


def _coerce_setting(name: str, value):
    default = getattr(DEFAULT_SETTINGS, name)
    try:
        if isinstance(default, bool):
            return to_bool(value)
        if name in _COUNT_SETTINGS:
            coerced = int(value)
        else:
            coerced = float(value)
    except (TypeError, ValueError):
        raise ConfigError("Setting {} must be a number. Got >{}<".format(
                          name, value))
    if coerced < 0:
        raise ConfigError("Setting {} must not be negative. Got >{}<".format(
                          name, value))
    return coerced


def load_settings(*overrides: Dict) -> Settings:
    """
    Merge settings from lowest to highest precedence.

    Typical use is load_settings(scenario_settings, cli_settings). Keys whose
    value is None are ignored, so unset command line options fall through to
    the scenario file, and then to the DEFAULT_CHAOSNET_* defaults.

    :param overrides: Zero or more dictionaries of setting name to value.
    :type overrides: Dict
    :return: Settings
    """
    merged = DEFAULT_SETTINGS._asdict()
    for override in overrides:
        if not override:
            continue
        for name, value in override.items():
            if name not in merged:
                raise ConfigError("Unknown setting >{}<. Expected one of " \
                                  "the following: {}".format(
                                  name, ", ".join(Settings._fields)))
            if value is None:
                continue
            merged[name] = _coerce_setting(name, value)
    if merged['poll_interval'] <= 0:
        raise ConfigError("Setting poll_interval must be greater than 0")
    logger.debug("settings: %s", merged)
    return Settings(**merged)
