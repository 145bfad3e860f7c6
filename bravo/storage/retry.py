"""Capped exponential backoff for transient store failures."""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from .base import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float = 0.5, cap: float = 30.0) -> float:
    """Delay before retry number ``attempt`` (0-based): ``base * 2**attempt``, capped."""
    if attempt < 0:
        return 0.0
    return min(cap, base * (2**attempt))


def call_with_retry(
    fn: Callable[[], T],
    retries: int = 2,
    base: float = 0.5,
    cap: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailableError,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "store call",
) -> T:
    """Run ``fn`` and retry it up to ``retries`` more times on ``retry_on`` errors.

    The last error is re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            if attempt >= retries:
                logger.warning(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base, cap)
            logger.debug(f"{description} failed ({e}); retrying in {delay:.2f}s")
            sleep(delay)
            attempt += 1
