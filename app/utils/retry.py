"""
Centralized async retry utility for transient failures.

Retry policy:
- Exponential backoff with jitter
- Only retries on transient failures
- Preserves original exception on final failure
- No logging inside utility (caller handles logging)

Guardrails:
- Domain errors are NEVER retried → raised immediately
- Retries only for transient infra errors → timeouts, connection resets
- Max retries: 2 (DEFAULT_RETRIES) → total 3 attempts

Reminder delivery is never wrapped in retry_async: a retried send after an
ambiguous provider timeout could mail the user twice within one scan.
"""

import asyncio
import inspect
import random
from typing import Callable, Type, Tuple, Any
import asyncpg
import aiohttp
import httpx
from app.core.metrics import get_metrics


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    aiohttp.ClientError,
    httpx.TransportError,
    ConnectionError,
    OSError,
)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Retry an async function with exponential backoff.

    Args:
        fn: Callable returning an awaitable (or a plain value)
        retries: Number of retry attempts (default: 2, total attempts: 3)
        base_delay: Base delay in seconds for exponential backoff (default: 1.0)
        max_delay: Maximum delay in seconds (default: 10.0)
        retry_on: Tuple of exception types to retry on (default: transient exceptions)

    Returns:
        Result of the function call

    Raises:
        Original exception if all retries fail.
        Non-retryable exceptions are raised immediately.
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result

        except Exception as e:
            if not isinstance(e, retry_on):
                raise
            if attempt >= retries:
                raise

            get_metrics().increment_counter("retries_total")
            delay = min(base_delay * (2 ** attempt), max_delay)
            # Jitter ±20%
            jitter = delay * 0.2 * (random.random() * 2 - 1)
            await asyncio.sleep(max(0, delay + jitter))

    raise RuntimeError("retry_async: unexpected end of retry loop")
