"""
Bounded retry with backoff for DeskAuth network calls.

Every call the lifecycle controller makes to the identity service goes
through a RetryPolicy. Delays are real ``asyncio.sleep`` suspensions, so
cancelling the enclosing task also cancels a pending backoff.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DelayFunction = Callable[[int], float]
SleepFunction = Callable[[float], Awaitable[Any]]


def exponential_backoff(
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: Optional[float] = None
) -> DelayFunction:
    """Delay of ``base_delay * exponential_base ** attempt`` seconds, optionally capped."""

    def delay(attempt: int) -> float:
        value = base_delay * (exponential_base ** attempt)
        if max_delay is not None:
            value = min(value, max_delay)
        return value

    return delay


def fixed_delay(seconds: float) -> DelayFunction:
    """Same delay after every failed attempt."""
    return lambda attempt: seconds


class RetryPolicy:
    """
    Retries an async operation up to ``max_attempts`` times.

    ``max_attempts`` of 0 or 1 runs the operation exactly once with no delay.
    After the last attempt the last exception is re-raised unchanged so that
    callers can inspect the underlying cause.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: Optional[DelayFunction] = None,
        sleep: Optional[SleepFunction] = None
    ):
        self.max_attempts = max_attempts
        self.delay = delay or exponential_backoff()
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation_id: str,
        fn: Callable[[], Awaitable[T]],
        delay: Optional[DelayFunction] = None,
        max_attempts: Optional[int] = None
    ) -> T:
        """
        Run ``fn`` with retries.

        Args:
            operation_id: Name used in log messages
            fn: Zero-argument coroutine function performing one attempt
            delay: Per-call delay function overriding the policy default
            max_attempts: Per-call attempt ceiling overriding the policy default

        Returns:
            The first successful result of ``fn``

        Raises:
            The exception raised by the final attempt
        """
        delay_fn = delay or self.delay
        attempts = max(1, self.max_attempts if max_attempts is None else max_attempts)

        for attempt in range(attempts):
            try:
                return await fn()
            except Exception as e:
                if attempt + 1 >= attempts:
                    if attempts > 1:
                        logger.warning(f"[{operation_id}] Giving up after {attempts} attempts: {e}")
                    raise

                wait = delay_fn(attempt)
                logger.warning(
                    f"[{operation_id}] Attempt {attempt + 1}/{attempts} failed: {e}; retrying in {wait:.1f}s"
                )
                await self._sleep(wait)


async def retry(
    operation_id: str,
    fn: Callable[[], Awaitable[T]],
    delay: Optional[DelayFunction] = None,
    max_attempts: int = 3
) -> T:
    """Run ``fn`` under a one-off RetryPolicy."""
    return await RetryPolicy(max_attempts=max_attempts, delay=delay).run(operation_id, fn)
