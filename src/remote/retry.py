"""Retry policy shared by remote run, copy and tail operations."""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, TypeVar

from common import Deadline
from errors import AuthenticationError, FleetError, RemoteCommandError

logger = logging.getLogger(__name__)

TERMINAL = 'terminal'
TRANSIENT = 'transient'

T = TypeVar('T')

# Errors retry_call will classify; anything outside these propagates as-is
RETRYABLE_TYPES = (FleetError, OSError, subprocess.SubprocessError)


def classify_remote_error(error: BaseException) -> str:
    """Authentication failures and remote exits are terminal; the rest is transient."""
    if isinstance(error, (AuthenticationError, RemoteCommandError)):
        return TERMINAL
    return TRANSIENT


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with an error classifier.

    Attributes:
        initial: Delay before the first retry (seconds)
        multiplier: Growth factor per retry
        maximum: Cap on any single delay (seconds)
        classify: Maps an error to TERMINAL or TRANSIENT
    """
    initial: float = 1.0
    multiplier: float = 1.5
    maximum: float = 10.0
    classify: Callable[[BaseException], str] = classify_remote_error

    def delay(self, retries: int) -> float:
        """Delay to wait after the given number of failed attempts (0-based)."""
        return min(self.initial * (self.multiplier ** retries), self.maximum)


DEFAULT_POLICY = RetryPolicy()


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    deadline: Deadline,
    what: str = 'remote',
) -> T:
    """Call fn until it succeeds, fails terminally, or the deadline fires.

    The deadline is checked between attempts, never during one.

    Raises:
        The terminal error, or the deadline's TimedOutError/CancelledError
        chained to the last transient error.
    """
    retries = 0
    while True:
        try:
            return fn()
        except RETRYABLE_TYPES as e:
            if policy.classify(e) == TERMINAL:
                logger.debug("[%s] terminal error: %s", what, e)
                raise
            delay = policy.delay(retries)
            logger.info("[%s] attempt %d failed (%s); retrying in %.2fs", what, retries + 1, e, delay)
            if not deadline.sleep(delay):
                raise deadline.error(what) from e
            retries += 1
