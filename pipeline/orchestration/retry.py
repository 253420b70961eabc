"""
Bounded retry for provider calls.

Only TransientRemoteError is retried. Anything else (permanent remote
errors, configuration errors) propagates on the first attempt without
using up the retry budget.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from pipeline.errors import RetryExhaustedError, TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delay: float = 2.0          # seconds before the second attempt
    backoff: str = "linear"     # "linear": delay * n, "fixed": delay

    def delay_for(self, attempt: int) -> float:
        """Wait after failed attempt number `attempt` (1-based)."""
        if self.backoff == "linear":
            return self.delay * attempt
        return self.delay


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    description: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run fn() up to policy.attempts times.

    A Retry-After hint on a transient error raises the wait to that value.

    Raises:
        RetryExhaustedError: when every attempt failed transiently.
    """
    last_error: Optional[TransientRemoteError] = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except TransientRemoteError as e:
            last_error = e
            if attempt == policy.attempts:
                break
            wait = max(policy.delay_for(attempt), e.retry_after or 0.0)
            logger.warning(
                "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                description, attempt, policy.attempts, e, wait,
            )
            sleep(wait)

    logger.warning("%s failed after %d attempts: %s", description, policy.attempts, last_error)
    raise RetryExhaustedError(policy.attempts, last_error)
