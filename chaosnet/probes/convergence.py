import threading
import time
from collections import namedtuple
from logzero import logger

from chaosnet.common import DEFAULT_CHAOSNET_MAX_PROBE_ERRORS, \
    DEFAULT_CHAOSNET_POLL_INTERVAL
from chaosnet.common.errors import (
    ClientError,
    ConvergenceTimeout,
    ProbeUnstable,
    RuntimeDriverError,
    ScenarioAborted,
    StepTimeout,
)
from chaosnet.helpers import Deadline

from typing import Callable, Dict, Iterable

ProbeResult = namedtuple('ProbeResult', ['polls', 'errors', 'elapsed',
                                         'observation'])

# Errors that only mean "not converged yet"
TRANSIENT_ERRORS = (ClientError, RuntimeDriverError)


def _timed_out(deadline: Deadline, polls: int,
               observation) -> ConvergenceTimeout:
    return ConvergenceTimeout("Did not converge within {:.3f} seconds ({} " \
                              "poll(s), last observation: {})".format(
                              deadline.elapsed(), polls, observation),
                              polls=polls, last_observation=observation)


class ConvergenceProbe(object):
    """
    Poll observable state until a predicate holds.

    :param poll_interval: Seconds between polls.
        Optional. (Default: chaosnet.common.DEFAULT_CHAOSNET_POLL_INTERVAL)
    :type poll_interval: Union[int, float]
    :param max_errors: Observation errors tolerated before giving up with
        ProbeUnstable.
        Optional. (Default: chaosnet.common.DEFAULT_CHAOSNET_MAX_PROBE_ERRORS)
    :type max_errors: int
    :param abort: Set it to cancel a wait in progress.
    :type abort: threading.Event
    """

    def __init__(self, poll_interval=DEFAULT_CHAOSNET_POLL_INTERVAL,
                 max_errors: int = DEFAULT_CHAOSNET_MAX_PROBE_ERRORS,
                 abort: threading.Event = None,
                 clock: Callable[[], float] = time.monotonic):
        self.poll_interval = float(poll_interval)
        self.max_errors = int(max_errors)
        self.abort = abort or threading.Event()
        self._clock = clock

    def wait_until(self, predicate: Callable[[Dict], bool],
                   observe: Callable[[], Dict],
                   deadline: Deadline) -> ProbeResult:
        """
        Return as soon as predicate(observe()) is true.

        Observation errors count as "not yet". The deadline is checked after
        each observation, so the probe never gives up before it has elapsed.

        :param predicate: Pure function of an observation.
        :type predicate: Callable[[Dict], bool]
        :param observe: Takes a fresh observation of client visible state.
        :type observe: Callable[[], Dict]
        :param deadline: When to give up with ConvergenceTimeout.
        :type deadline: chaosnet.helpers.Deadline
        :return: ProbeResult
        """
        started = self._clock()
        polls = 0
        errors = 0
        observation = None
        while True:
            if self.abort.is_set():
                raise ScenarioAborted("Convergence wait aborted after {} " \
                                      "poll(s)".format(polls))
            polls += 1
            try:
                observation = observe()
                converged = bool(predicate(observation))
            except StepTimeout:
                # The deadline ran out in the middle of an observation
                raise _timed_out(deadline, polls, observation)
            except TRANSIENT_ERRORS as e:
                errors += 1
                converged = False
                logger.debug("poll %d: observation failed (%d error(s) so " \
                             "far): %s", polls, errors, e)
                if errors > self.max_errors:
                    raise ProbeUnstable("Observation failed {} times, more " \
                                        "than the {} tolerated. Last error: " \
                                        "{}".format(errors, self.max_errors,
                                        e), errors=errors, last_error=e)
            else:
                logger.debug("poll %d: %s converged=%s", polls, observation,
                             converged)
            if converged:
                elapsed = self._clock() - started
                logger.info("Converged after %d poll(s) in %.3f seconds",
                            polls, elapsed)
                return ProbeResult(polls, errors, elapsed, observation)

            remaining = deadline.remaining()
            if remaining is not None and remaining <= 0:
                raise _timed_out(deadline, polls, observation)
            wait = self.poll_interval
            if remaining is not None:
                wait = min(wait, remaining)
            # Cancellable sleep
            if self.abort.wait(wait):
                raise ScenarioAborted("Convergence wait aborted after {} " \
                                      "poll(s)".format(polls))


def kv_observer(client, nodes: Iterable[str], key: str, timeout=None,
                deadline: Deadline = None) -> Callable[[], Dict]:
    """
    Build an observer reading key from every node through client.

    A node that cannot be read makes the whole observation fail, which the
    probe treats as "not converged yet". With a deadline, each read is bounded
    by what is left of it when the read starts, and StepTimeout is raised
    once nothing is left.
    """
    nodes = list(nodes)

    def observe() -> Dict:
        observation = {}
        for node in nodes:
            read_timeout = timeout
            if deadline is not None and timeout is not None:
                read_timeout = deadline.bound(timeout)
            observation[node] = client.get(node, key, timeout=read_timeout)
        return observation

    return observe
