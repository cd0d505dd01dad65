"""Small asyncio helpers shared by the daemon's periodic workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("petbook.loop")


async def wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep for ``timeout`` seconds unless ``stop_event`` fires first.

    Returns:
        True if the stop event is set.
    """
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass
    return stop_event.is_set()


async def run_periodic(
    name: str,
    interval: float,
    stop_event: asyncio.Event,
    tick: Callable[[], Awaitable[object]],
    immediate: bool = False,
) -> None:
    """Call ``tick`` every ``interval`` seconds until stopped.

    A failing tick is logged and the loop carries on; the next tick is
    the retry.
    """
    if not immediate and await wait_or_stop(stop_event, interval):
        return
    while not stop_event.is_set():
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s tick failed: %s", name, exc)
        if await wait_or_stop(stop_event, interval):
            return
