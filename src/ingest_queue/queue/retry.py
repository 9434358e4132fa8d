"""Retry-with-backoff helper for arbitrary blocking work."""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    fn: Callable[[], T],
    max_retries: int = 3,
    base_delay_s: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying with exponential backoff.

    Args:
        fn: Zero-argument callable to run
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay_s: Delay before the first retry; doubles each time
        retry_on: Exception types that are eligible for retry
        should_retry: Optional predicate to further narrow retryable errors
        sleep: Injected for tests

    Returns:
        Whatever fn returns

    Raises:
        The last exception once retries are exhausted, or immediately for
        exceptions that are not retryable
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == max_retries:
                raise
            if should_retry is not None and not should_retry(e):
                raise
            delay = base_delay_s * (2 ** attempt)
            logger.debug("Attempt %d failed (%s); retrying in %.2fs", attempt + 1, e, delay)
            sleep(delay)

    raise AssertionError("unreachable")
