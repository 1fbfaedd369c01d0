import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from loguru import logger

from resource_reconciler.classifier import ErrorClassifier
from resource_reconciler.models import ErrorKind
from resource_reconciler.state_refresher import compute_delay

T = TypeVar("T")


async def retry_on_transient(
    call: Callable[[], Awaitable[T]],
    timeout: float,
    classifier: Optional[ErrorClassifier] = None,
    min_delay: float = 1.0,
    max_delay: float = 32.0,
    backoff_factor: float = 2.0,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    clock: Optional[Callable[[], float]] = None,
) -> T:
    """Runs a side-effecting call, retrying while it fails transiently.

    Non-transient errors are raised unchanged. Once ``timeout`` has elapsed the
    call is attempted one final time and whatever it raises propagates, which
    covers remote state that settles just after the deadline.
    """
    classifier = classifier or ErrorClassifier()
    sleep = sleep or asyncio.sleep
    clock = clock or (lambda: asyncio.get_event_loop().time())

    start = clock()
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as e:
            if classifier.classify(e) is not ErrorKind.transient:
                raise
            remaining = timeout - (clock() - start)
            if remaining <= 0:
                logger.warning(f"Still failing after {timeout:.1f}s, final attempt: {e!r}")
                break
            delay = min(
                compute_delay(attempt, min_delay, max_delay, backoff_factor), remaining
            )
            logger.warning(f"Transient error {e!r}, retrying in {delay:.2f}s")
            await sleep(delay)
            attempt += 1

    return await call()
