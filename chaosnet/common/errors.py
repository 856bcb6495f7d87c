"""
Errors raised by chaosnet.

ConfigError is fatal and raised before any runtime action. RuntimeDriverError
is the only error retried, and only when it is transient. Everything else is
reported verbatim in the scenario report.
"""


class ChaosNetError(Exception):
    """Base class for every error chaosnet raises on purpose."""


class ConfigError(ChaosNetError):
    """Malformed or contradictory scenario definition or setting."""


class FaultConflict(ChaosNetError):
    """A fault structurally conflicts with an already active fault."""

    def __init__(self, message, fault=None, active=None):
        super().__init__(message)
        self.fault = fault
        self.active = active


class ConvergenceTimeout(ChaosNetError):
    """The convergence predicate never held before the deadline."""

    def __init__(self, message, polls=0, last_observation=None):
        super().__init__(message)
        self.polls = polls
        self.last_observation = last_observation


class ProbeUnstable(ChaosNetError):
    """Too many errors while observing node state."""

    def __init__(self, message, errors=0, last_error=None):
        super().__init__(message)
        self.errors = errors
        self.last_error = last_error


class RuntimeDriverError(ChaosNetError):
    """
    A container runtime operation failed.

    :param transient: True when retrying the same operation may succeed.
    :param command: The runtime command that failed, if any.
    :param stderr: What the runtime reported.
    """

    def __init__(self, message, transient=False, command=None, stderr=None):
        super().__init__(message)
        self.transient = transient
        self.command = command
        self.stderr = stderr


class ClientError(ChaosNetError):
    """An application level request against a node failed."""

    def __init__(self, message, node=None, status_code=None):
        super().__init__(message)
        self.node = node
        self.status_code = status_code


class StepTimeout(ChaosNetError):
    """A step ran past its own or the scenario's deadline."""


class ScenarioAborted(ChaosNetError):
    """The run was cancelled by an external abort signal."""


class StepFailed(ChaosNetError):
    """An assertion or a client call expectation did not hold."""

    def __init__(self, message, observation=None):
        super().__init__(message)
        self.observation = observation
