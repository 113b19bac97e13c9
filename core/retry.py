"""
Retry and wait primitives.

``with_retry`` is the one retry loop used for page creation, navigation and
the proxy degrade-to-direct path. ``poll_until`` replaces fixed sleeps
wherever the code is really waiting for a UI state.
"""

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

from core.error_handler import ReviewReportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Backoff:
    """Exponential backoff with optional jitter."""
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential_base: float = 2.0
    jitter_max_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.base_delay_seconds * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay_seconds)
        if self.jitter_max_seconds:
            delay += random.uniform(0, self.jitter_max_seconds)
        return delay

    @classmethod
    def none(cls) -> "Backoff":
        return cls(base_delay_seconds=0.0, max_delay_seconds=0.0)


@dataclass
class RetryAttempt:
    """Record of a retry attempt."""
    attempt_number: int
    error_message: str
    wait_time_seconds: float
    timestamp: datetime = field(default_factory=datetime.now)


def _should_retry(error: BaseException, retry_on: Tuple[Type[BaseException], ...]) -> bool:
    if not isinstance(error, retry_on):
        return False
    # Taxonomy errors carry their own verdict.
    if isinstance(error, ReviewReportError):
        return error.retryable
    return True


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    attempts: int = 3,
    backoff: Optional[Backoff] = None,
    fallback: Optional[Callable[[BaseException], Awaitable[T]]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
    history: Optional[List[RetryAttempt]] = None,
) -> T:
    """
    Run ``operation(attempt)`` up to ``attempts`` times.

    Args:
        operation: Async callable receiving the 1-based attempt number, so
            callers can switch strategy per attempt.
        attempts: Maximum number of attempts.
        backoff: Delay policy between attempts (default: exponential from 1s).
        fallback: Awaited with the last error once attempts are exhausted;
            its result (or exception) replaces the failure.
        retry_on: Exception types that may be retried. A ``ReviewReportError``
            is only retried when its ``retryable`` flag is set.
        label: Name used in log lines.
        history: Optional list that receives one ``RetryAttempt`` per failure.

    Returns:
        The first successful result of ``operation`` or of ``fallback``.
    """
    backoff = backoff or Backoff()
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation(attempt)
        except Exception as e:
            last_error = e
            if not _should_retry(e, retry_on):
                raise

            wait_time = backoff.delay_for(attempt) if attempt < attempts else 0.0
            if history is not None:
                history.append(RetryAttempt(attempt, str(e), wait_time))

            if attempt < attempts:
                logger.warning(
                    f"{label} attempt {attempt}/{attempts} failed: {e}. "
                    f"Retrying in {wait_time:.1f}s..."
                )
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
            else:
                logger.error(f"{label} failed after {attempts} attempts: {e}")

    if fallback is not None:
        logger.info(f"{label}: using fallback")
        return await fallback(last_error)

    raise last_error


async def _evaluate(predicate: Callable[[], Any]) -> Any:
    result = predicate()
    if inspect.isawaitable(result):
        result = await result
    return result


async def poll_until(
    predicate: Callable[[], Any],
    timeout: float,
    interval: float = 0.25,
) -> Any:
    """
    Evaluate ``predicate`` until it returns a truthy value or ``timeout`` elapses.

    ``predicate`` may be sync or async. Exceptions raised by the predicate
    count as a falsy evaluation. Returns the truthy value, or ``None`` on
    timeout. The predicate is always evaluated at least once.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        try:
            value = await _evaluate(predicate)
        except Exception as e:
            logger.debug(f"poll_until predicate raised: {e}")
            value = None

        if value:
            return value

        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(interval, remaining))
