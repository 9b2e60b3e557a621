"""
Fire-and-forget task helper for work that must not hold up a request
(realtime fan-out, push dispatch).
"""

import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Background task {task.get_name()} failed: {exc}")


def spawn(coro: Awaitable, name: str = None) -> asyncio.Task:
    """
    Schedule a coroutine on the running loop without awaiting it.

    Failures are logged and never propagate to the caller.

    Args:
        coro: Coroutine to run
        name: Optional task name used in log messages

    Returns:
        The scheduled task
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


async def wait_for_background_tasks(timeout: float = None) -> None:
    """
    Wait until every scheduled background task (and any it spawns) has finished.

    Used on shutdown and by tests that assert on side effects of dispatch.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    while _background_tasks:
        remaining = None
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Timed out waiting for {len(_background_tasks)} background task(s)")
                return
        await asyncio.wait(set(_background_tasks), timeout=remaining)
