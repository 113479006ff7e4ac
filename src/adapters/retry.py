# src/adapters/retry.py
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from src.config.models import RetryPolicy
from src.log_handler.logging_config import get_logger
from .exceptions import AdapterError

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable(error: AdapterError) -> bool:
    """Network failures, 5xx and rate limiting are transient; other 4xx are not."""
    status = error.status_code
    if status is None:
        return True
    return status >= 500 or status == 429


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "API call",
    retryable: Optional[Callable[[AdapterError], bool]] = None,
) -> T:
    """Run an async operation, retrying transient AdapterErrors with backoff."""
    retryable = retryable or is_retryable
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except AdapterError as e:
            if attempt >= policy.max_attempts or not retryable(e):
                raise

            delay = policy.calculate_delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{policy.max_attempts}). "
                f"Retrying in {delay:.2f} seconds. Error: {str(e)}"
            )
            await asyncio.sleep(delay)
