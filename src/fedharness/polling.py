"""Block until a distributed state change becomes observable.

Both helpers repeatedly fetch batches of observations with a cursor returned
by the previous fetch, passing each observation to ``check`` in arrival order.
The first observation that satisfies ``check`` is returned. The deadline is
checked before every fetch; an in-flight fetch is never interrupted, so a
fetch that hangs can overrun the deadline.

Fetch errors propagate immediately. Only the batch re-fetch loop repeats.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable, Iterable, Optional, Tuple, TypeVar

from loguru import logger

from fedharness.errors import PollTimeout

T = TypeVar("T")

Cursor = Optional[str]
FetchResult = Tuple[Iterable[T], Cursor]


def poll_until(
    fetch: Callable[[Cursor], FetchResult],
    check: Callable[[T], bool],
    *,
    timeout: float,
    description: str = "poll_until",
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Fetch batches until ``check`` holds for an observation.

    Args:
        fetch: Called with the current cursor (``None`` on the first call);
            returns the batch and the cursor for the next call.
        check: Predicate applied to each observation.
        timeout: Seconds after which polling fails.
        description: Label used in failure messages.
        clock: Monotonic time source.

    Returns:
        The first observation for which ``check`` returned true.

    Raises:
        PollTimeout: if the deadline passes first.
    """
    start = clock()
    cursor: Cursor = None
    checked = 0
    fetches = 0
    while True:
        if clock() - start > timeout:
            raise PollTimeout(description, checked, timeout)
        batch, next_cursor = fetch(cursor)
        fetches += 1
        for observation in batch:
            if check(observation):
                logger.debug(
                    "{} satisfied after {} checks over {} fetches",
                    description,
                    checked + 1,
                    fetches,
                )
                return observation
            checked += 1
        cursor = next_cursor


async def apoll_until(
    fetch: Callable[[Cursor], Awaitable[FetchResult]],
    check: Callable[[T], bool],
    *,
    timeout: float,
    description: str = "apoll_until",
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Async variant of :func:`poll_until`; ``fetch`` is awaited."""
    start = clock()
    cursor: Cursor = None
    checked = 0
    while True:
        if clock() - start > timeout:
            raise PollTimeout(description, checked, timeout)
        batch, cursor = await fetch(cursor)
        for observation in batch:
            if check(observation):
                return observation
            checked += 1
