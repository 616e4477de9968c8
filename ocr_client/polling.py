import asyncio
import inspect
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from ocr_client.errors import PollCancelledError, PollTimeoutError
from ocr_client.models import PollPolicy

T = TypeVar("T")


async def poll_until(
    operation: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    policy: Optional[PollPolicy] = None,
) -> T:
    """Call operation until predicate accepts its value.

    Cancellation is checked before every call, the deadline only after one,
    so even a max_wait shorter than poll_interval gets a single attempt.
    Errors raised by operation propagate unchanged.
    """
    policy = policy or PollPolicy()
    loop = asyncio.get_event_loop()
    start_time = loop.time()
    polls = 0

    while True:
        if policy.cancel_event is not None and policy.cancel_event.is_set():
            logger.debug(f"Polling cancelled after {polls} polls")
            raise PollCancelledError()

        value = await operation()
        polls += 1

        if policy.on_progress is not None:
            result = policy.on_progress(value)
            if inspect.isawaitable(result):
                await result

        if predicate(value):
            return value

        elapsed = loop.time() - start_time
        if elapsed >= policy.max_wait:
            logger.warning(f"Polling gave up after {polls} polls ({elapsed:.2f}s)")
            raise PollTimeoutError(policy.max_wait)

        remaining = policy.max_wait - elapsed
        delay = min(policy.poll_interval, remaining)
        logger.debug(f"Condition not met, waiting {delay:.2f}s before next poll")
        await asyncio.sleep(delay)

        # The sleep ran all the way to the deadline; no further call is owed
        if delay >= remaining and loop.time() - start_time >= policy.max_wait:
            logger.warning(f"Polling gave up after {polls} polls at the deadline")
            raise PollTimeoutError(policy.max_wait)
