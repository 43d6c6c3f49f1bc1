"""
Retry and polling helpers for exchange reads.

Order placement is never wrapped here: a retried POST can double an order.
"""
import asyncio
import functools
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _default_should_retry(exc: Exception) -> bool:
    return not isinstance(exc, (ValueError, TypeError))


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
):
    """
    Decorator to retry async reads with exponential backoff and jitter.

    An exception is retried when it is one of ``transient_errors`` (if given)
    or when ``should_retry`` accepts it. With neither, anything except
    ValueError and TypeError is retried.
    """
    def is_transient(exc: Exception) -> bool:
        if transient_errors is None and should_retry is None:
            return _default_should_retry(exc)
        if transient_errors and isinstance(exc, transient_errors):
            return True
        return bool(should_retry and should_retry(exc))

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delay = base_delay
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_transient(e):
                        raise
                    if attempt >= max_retries:
                        logger.warning("Retries exhausted", func=func.__name__, attempts=attempt + 1, error=str(e))
                        raise
                    logger.warning(
                        "Transient error, retrying",
                        func=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=round(delay, 2),
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, max_backoff) + random.uniform(0, 0.5)

        return wrapper
    return decorator


class PollStatus(str, Enum):
    DONE = "done"
    TIMEOUT = "timeout"


@dataclass
class PollResult(Generic[T]):
    """Outcome of a bounded poll: the last observed value and whether the predicate held."""
    status: PollStatus
    value: Optional[T]
    attempts: int

    @property
    def done(self) -> bool:
        return self.status == PollStatus.DONE


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    attempts: int,
    interval: float,
    tolerate: Tuple[Type[Exception], ...] = (),
) -> PollResult[T]:
    """
    Call ``fetch`` up to ``attempts`` times, ``interval`` seconds apart, until
    ``predicate`` accepts its result.

    Exceptions in ``tolerate`` count as a failed attempt; anything else propagates.
    Returns TIMEOUT with the last successfully fetched value when attempts run out.
    """
    last: Optional[T] = None
    for attempt in range(1, attempts + 1):
        try:
            last = await fetch()
        except tolerate as e:
            logger.warning("Poll attempt failed", attempt=attempt, error=str(e))
        else:
            if predicate(last):
                return PollResult(PollStatus.DONE, last, attempt)
        if attempt < attempts:
            await asyncio.sleep(interval)
    return PollResult(PollStatus.TIMEOUT, last, attempts)
