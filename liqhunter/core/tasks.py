"""
Supervised Background Tasks

Helpers for long-running loops that share a stop token (asyncio.Event).
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


async def wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """
    Sleep up to timeout seconds, waking early if stop is set.

    Returns:
        True if stop was set
    """
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(timeout, 0))
    except asyncio.TimeoutError:
        pass
    return stop.is_set()


async def run_periodic(
    name: str,
    interval_sec: float,
    fn: Callable[[], Awaitable[None]],
    stop: asyncio.Event,
    run_immediately: bool = False,
):
    """
    Call fn every interval_sec until stop is set.

    Errors are logged with traceback and the loop continues on the next tick.
    """
    if not run_immediately and await wait_for_stop(stop, interval_sec):
        return

    while not stop.is_set():
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error in {name} loop: {e}")

        if await wait_for_stop(stop, interval_sec):
            break

    logger.debug(f"{name} loop stopped")
