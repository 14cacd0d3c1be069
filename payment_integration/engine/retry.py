"""
Exponential backoff retry logic for idempotent outbound calls.

Used for status polls and ledger notifications: retry on transient failures
(429 rate limits, 5xx, timeouts) with exponential backoff and a bounded
number of attempts. Non-retriable provider errors are raised immediately.
Initiation calls are never wrapped here since they are not idempotent on
every rail.
"""

import asyncio
import logging
from typing import Any, Callable

from payment_integration.errors import ProviderRequestError, RateLimitError

logger = logging.getLogger("payment_integration.retry")

RETRIABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 30.0


def is_retriable_status(status_code: int) -> bool:
    return status_code in RETRIABLE_STATUS_CODES


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function with exponential backoff on retriable errors.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts.
        base_delay: First sleep in seconds; doubles per attempt up to MAX_DELAY.

    Returns:
        The result of the function call.

    Raises:
        ProviderRequestError: On permanent failure or exhausted retries.
    """
    delay = base_delay
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except ProviderRequestError as e:
            last_error = e
            if not e.retriable:
                raise

            if attempt < max_retries:
                sleep_for = min(delay, MAX_DELAY)
                if isinstance(e, RateLimitError) and e.retry_after:
                    sleep_for = min(e.retry_after, MAX_DELAY)

                logger.warning(
                    "Retriable error on attempt %d/%d: %s; sleeping %.1fs",
                    attempt + 1,
                    max_retries + 1,
                    e,
                    sleep_for,
                )
                await asyncio.sleep(sleep_for)
                delay = min(delay * 2, MAX_DELAY)
            else:
                logger.error("Exhausted %d retries for provider call: %s", max_retries, e)
                raise

    raise last_error or ProviderRequestError("Unknown error after retries")
