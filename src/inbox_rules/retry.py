"""
Bounded retries with exponential backoff for provider calls
"""
import time
from typing import Callable, Optional, TypeVar

import structlog

from .providers.errors import RateLimited, is_retryable

logger = structlog.get_logger(__name__)

T = TypeVar('T')

# Never sleep longer than this inside a single message's processing
MAX_RETRY_DELAY_SECONDS = 30.0


def backoff_delay(attempt: int, base_delay: float, error: Optional[BaseException] = None) -> float:
    """Delay before retry number `attempt` (1-based)"""
    if isinstance(error, RateLimited) and error.retry_after is not None:
        return min(error.retry_after, MAX_RETRY_DELAY_SECONDS)
    return min(base_delay * (2 ** (attempt - 1)), MAX_RETRY_DELAY_SECONDS)


def call_with_retries(func: Callable[[], T], attempts: int = 3, base_delay: float = 1.0,
                      sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Call `func`, retrying retryable provider errors up to `attempts` calls in
    total. Non-retryable errors and the last retryable one are re-raised.
    """
    attempt = 1
    while True:
        try:
            return func()
        except Exception as e:
            if not is_retryable(e) or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay, e)
            logger.warning("Retrying provider call", attempt=attempt, delay=delay, error=str(e),
                           error_type=type(e).__name__)
            sleep(delay)
            attempt += 1
