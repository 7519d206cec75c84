"""Bounded retry for flaky network operations.

Wraps source syncs, artifact downloads and release-metadata fetches. A call is
attempted up to ``policy.attempts`` times with a fixed delay between attempts;
the first success is returned and exhausting every attempt raises
RetryExhaustedError.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from galley.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between."""

    attempts: int
    delay: float

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must not be negative")


SYNC_POLICY = RetryPolicy(attempts=5, delay=60)
TOOL_DOWNLOAD_POLICY = RetryPolicy(attempts=3, delay=10)
HOSTS_DOWNLOAD_POLICY = RetryPolicy(attempts=3, delay=5)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    operation: str,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or the policy is exhausted.

    Args:
        func: Zero-argument callable to attempt.
        policy: Attempt count and delay.
        operation: Human-readable name used in logs and errors.
        retry_on: Exception types that count as a failed attempt.
        sleep: Sleep function (injectable for tests).

    Returns:
        Whatever ``func`` returned on its first successful attempt.

    Raises:
        RetryExhaustedError: If every attempt failed.
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.attempts + 1):
        logger.info("%s: attempt %d of %d", operation, attempt, policy.attempts)
        try:
            return func()
        except retry_on as e:
            last_error = e
            logger.warning("%s: attempt %d failed: %s", operation, attempt, e)
        if attempt < policy.attempts:
            logger.info("%s: waiting %ss before retry", operation, policy.delay)
            sleep(policy.delay)

    logger.error("%s failed after %d attempts", operation, policy.attempts)
    raise RetryExhaustedError(operation, policy.attempts, last_error)


__all__ = [
    "HOSTS_DOWNLOAD_POLICY",
    "SYNC_POLICY",
    "TOOL_DOWNLOAD_POLICY",
    "RetryPolicy",
    "retry_call",
]
