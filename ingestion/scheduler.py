# ingestion/scheduler.py
"""Fixed-interval driver for a collection cycle"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def validate_interval(interval) -> float:
    """Return the interval as float seconds, or raise ValueError if it is not positive"""
    try:
        value = float(interval)
    except (TypeError, ValueError):
        raise ValueError(f"interval must be a number of seconds, got {interval!r}")

    if not value > 0:
        raise ValueError(f"interval must be greater than 0, got {interval!r}")
    return value


async def run(
    interval: float,
    stop_event: asyncio.Event,
    collect: Callable[[], Awaitable[object]],
) -> int:
    """
    Run `collect` once immediately, then once per elapsed interval until
    `stop_event` is set. Returns the number of cycles run.

    The stop event is only checked between cycles; a cycle already in
    progress always completes. Ticks missed while a cycle overran are
    dropped rather than replayed. A failing cycle is logged and the loop
    keeps going.
    """
    interval = validate_interval(interval)

    cycles = 0
    started = time.monotonic()
    next_tick = started

    while not stop_event.is_set():
        cycles += 1
        try:
            await collect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Collection cycle {cycles} failed: {e}", exc_info=True)

        # Next boundary strictly in the future
        now = time.monotonic()
        next_tick += interval
        if next_tick <= now:
            missed = int((now - next_tick) // interval) + 1
            next_tick += missed * interval
            logger.debug(f"Cycle {cycles} overran, skipped {missed} tick(s)")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=next_tick - now)
        except asyncio.TimeoutError:
            pass

    logger.info(f"Scheduler stopped after {cycles} cycle(s)")
    return cycles
