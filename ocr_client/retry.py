import asyncio
import inspect
import math
import random
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp
from loguru import logger

from ocr_client.errors import NetworkError, OCRError, RateLimitError, get_header
from ocr_client.models import RetryPolicy

T = TypeVar("T")

JITTER_RATIO = 0.25


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, OCRError):
        return error.status_code
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status
    return None


def is_retriable_error(error: BaseException) -> bool:
    """Decide whether a failed call is worth another attempt.

    Network-level failures (no status at all), 5xx, 429 and 408 are retried.
    Every other status, and any exception that is not a transport failure,
    is fatal.
    """
    if isinstance(
        error, (NetworkError, aiohttp.ClientConnectionError, asyncio.TimeoutError)
    ):
        return True

    status = _status_of(error)
    if status is None:
        # Only transport errors may lack a status; anything else is a bug
        return isinstance(error, aiohttp.ClientError)

    return status >= 500 or status in (429, 408)


def get_retry_after(error: BaseException) -> Optional[float]:
    """Server-suggested delay in seconds, or None when absent or unparseable"""
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        return float(error.retry_after)

    headers = getattr(error, "headers", None)
    raw = get_header(headers, "Retry-After")
    if raw is None:
        return None
    try:
        return float(int(raw.strip()))
    except ValueError:
        return None


def get_retry_delay(attempt: int, policy: RetryPolicy, error: BaseException) -> float:
    """Seconds to wait after the given zero-based attempt failed"""
    retry_after = get_retry_after(error)
    if retry_after is not None:
        return retry_after

    delay = min(policy.initial_delay * (policy.multiplier**attempt), policy.max_delay)
    delay *= 1 + JITTER_RATIO * (2 * random.random() - 1)
    # floor to whole milliseconds
    return math.floor(delay * 1000) / 1000


async def with_retry(
    operation: Callable[[], Awaitable[T]], policy: Optional[RetryPolicy] = None
) -> T:
    """Run operation until it succeeds, fails fatally, or the budget is spent.

    The error raised on give-up is the one from the last attempt, unchanged.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retriable_error(e):
                logger.debug(f"Not retrying {type(e).__name__}: {e}")
                raise

            if attempt == policy.max_retries:
                logger.error(
                    f"All {policy.max_retries + 1} attempts failed, last error: {type(e).__name__}: {e}"
                )
                raise

            delay = get_retry_delay(attempt, policy, e)

            if policy.on_retry is not None:
                result = policy.on_retry(attempt + 1, e)
                if inspect.isawaitable(result):
                    await result

            logger.warning(
                f"Attempt {attempt + 1}/{policy.max_retries + 1} failed: {type(e).__name__}: {e}. "
                f"Retrying in {delay:.3f}s"
            )
            await asyncio.sleep(delay)

    # range() is never empty, the loop either returns or raises
    raise RuntimeError("unreachable")
