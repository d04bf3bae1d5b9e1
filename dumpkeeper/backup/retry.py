"""
Bounded retries with exponential backoff for transient engine errors.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import BackupError


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently a transient failure is retried.

    Attributes:
        attempts: Total number of attempts, including the first one
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound for a single delay
        multiplier: Growth factor applied after every retry
    """
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    def delays(self):
        """Yield the sleep before each retry (attempts - 1 values)."""
        delay = self.base_delay
        for _ in range(max(self.attempts - 1, 0)):
            yield min(delay, self.max_delay)
            delay *= self.multiplier


NO_RETRY = RetryPolicy(attempts=1)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy = RetryPolicy(),
    description: str = 'operation',
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Call ``fn`` and retry it while it raises a transient BackupError.

    Non-transient errors (AuthError, DiskFullError, ...) propagate on the
    first occurrence. When every attempt fails, the last error propagates.

    Args:
        fn: Zero-argument callable to invoke
        policy: RetryPolicy controlling attempts and backoff
        description: Human readable name used in log messages
        sleep: Sleep function (replaced in tests)

    Returns:
        Whatever ``fn`` returns
    """
    delays = policy.delays()
    attempt = 1

    while True:
        try:
            return fn()
        except BackupError as e:
            if not e.transient:
                raise
            delay = next(delays, None)
            if delay is None:
                logger.warning(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.info(f"{description} failed ({e.error_kind}), retrying in {delay:.1f}s (attempt {attempt + 1}/{policy.attempts})")
            sleep(delay)
            attempt += 1
