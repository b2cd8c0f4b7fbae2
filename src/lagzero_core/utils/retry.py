"""
Bounded retry helpers.

One policy object describes how many attempts are allowed and how long to
wait between them. It is used both by the installer's network calls
(driven by ``retry``) and by the supervisor's crash loop (which schedules
its own restarts through ``can_retry``/``delay_for``).
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type
import asyncio

from .logging import get_logger


logger = get_logger("lagzero.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget plus backoff schedule.

    ``backoff(n)`` is the delay before attempt ``n + 1`` after ``n`` attempts
    have failed.
    """
    max_attempts: int
    backoff: Callable[[int], float]

    @classmethod
    def linear(cls, max_attempts: int, step: float) -> "RetryPolicy":
        """Delay grows as ``attempt * step``."""
        return cls(max_attempts=max_attempts, backoff=lambda attempt: attempt * step)

    @classmethod
    def fixed(cls, max_attempts: int, delay: float) -> "RetryPolicy":
        """Same delay before every retry."""
        return cls(max_attempts=max_attempts, backoff=lambda attempt: delay)

    def can_retry(self, attempts_used: int) -> bool:
        return attempts_used < self.max_attempts

    def delay_for(self, attempts_used: int) -> float:
        return max(0.0, float(self.backoff(attempts_used)))


async def retry(
    operation: Callable[[int], Awaitable[Any]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Run ``operation(attempt)`` until it succeeds or the policy is exhausted.

    Args:
        operation: Coroutine function receiving the 1-based attempt number
        policy: Attempt budget and backoff
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately
        on_retry: Called with (attempt, error, delay) before sleeping
        sleep: Sleep coroutine, replaceable in tests

    Returns:
        The operation's result
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except retry_on as e:
            if not policy.can_retry(attempt):
                logger.error(
                    "max_retries_exceeded",
                    attempts=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retrying_after_error",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)


__all__ = [
    'RetryPolicy',
    'retry',
]
