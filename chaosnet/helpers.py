import time
from logzero import logger

from chaosnet.common.errors import RuntimeDriverError, StepTimeout

from typing import Callable, Union


class Deadline(object):
    """
    A point in time after which a step (or a whole scenario) has run too long.

    Deadlines nest: a step deadline created with a parent never ends after the
    parent's. Blocking calls bound their own timeout with bound().
    """

    def __init__(self, seconds: Union[int, float, None], parent=None,
                 clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.started = clock()
        self.expires_at = None
        if seconds is not None:
            self.expires_at = self.started + float(seconds)
        if parent is not None and parent.expires_at is not None:
            if self.expires_at is None or parent.expires_at < self.expires_at:
                self.expires_at = parent.expires_at
        self.parent = parent

    def remaining(self) -> Union[float, None]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    def elapsed(self) -> float:
        return self._clock() - self.started

    def bound(self, timeout: Union[int, float]) -> float:
        """
        Shrink timeout so a call started now cannot outlive this deadline.

        :param timeout: The call's own timeout in seconds.
        :type timeout: Union[int, float]
        :return: float
        """
        remaining = self.remaining()
        if remaining is None:
            return float(timeout)
        if remaining <= 0:
            raise StepTimeout("Deadline exceeded before the call started")
        return min(float(timeout), remaining)

    def check(self, what: str = "step") -> None:
        if self.expired():
            raise StepTimeout("{} exceeded its deadline after {:.3f}s".format(
                              what, self.elapsed()))


def retry(func: Callable, retries: int, backoff: Union[int, float],
          description: str = None, sleep: Callable[[float], None] = time.sleep,
          deadline: Deadline = None):
    """
    Call func, retrying transient RuntimeDriverErrors with exponential backoff.

    Non-transient errors are raised on first occurrence. The last transient
    error is raised once all retries are exhausted, or as soon as deadline
    leaves no time for another attempt.

    :param func: A callable taking no arguments.
    :type func: Callable
    :param retries: How many times to retry after the first attempt.
    :type retries: int
    :param backoff: Seconds to wait before the first retry. Doubles after each
        retry.
    :type backoff: Union[int, float]
    :param description: What is being attempted. Used for logging.
    :type description: str
    :param deadline: Overall budget of every attempt and backoff together.
        Sleeps are cut short to fit in it.
    :type deadline: Deadline
    :return: Whatever func returns.
    """
    description = description or getattr(func, '__name__', repr(func))
    attempt = 0
    delay = float(backoff)
    while True:
        try:
            return func()
        except RuntimeDriverError as e:
            out_of_time = deadline is not None and deadline.expired()
            if not e.transient or attempt >= int(retries) or out_of_time:
                logger.error("%s failed after %d attempt(s): %s", description,
                             attempt + 1, e)
                raise
            attempt += 1
            wait = delay
            if deadline is not None and deadline.remaining() is not None:
                wait = min(wait, deadline.remaining())
            logger.info("%s failed with a transient error (%s). Retry %d/%d " \
                        "in %.2f seconds...", description, e, attempt,
                        int(retries), wait)
            sleep(wait)
            delay *= 2
            if deadline is not None and deadline.expired():
                logger.error("%s ran out of time after %d attempt(s): %s",
                             description, attempt, e)
                raise
