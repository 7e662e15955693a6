"""Simple asyncio scheduler for periodic tasks (drives dispatch cycles when no external cron is configured)."""
import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


async def _periodic_task(interval_seconds: float, coro: Callable, *args, **kwargs):
    while True:
        try:
            await coro(*args, **kwargs)
        except Exception as e:
            logger.error(f"Scheduled task error: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


def start_scheduler(interval_seconds: float, coro: Callable, *args, **kwargs) -> asyncio.Task:
    """Start periodic coro as background task and return the task."""
    task = asyncio.create_task(_periodic_task(interval_seconds, coro, *args, **kwargs))
    return task


async def stop_scheduler(task: asyncio.Task):
    """Cancel a task started by ``start_scheduler`` and wait for it to finish."""
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Scheduler stopped")
