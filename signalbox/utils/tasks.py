"""Spawn asyncio background tasks with error logging."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)

# Event loop only keeps weak references to tasks
_background_tasks: set[asyncio.Task[Any]] = set()


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine and logs the traceback.
    Cancellation is propagated.
    """
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())


def spawn_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[None]:
    """Run a coroutine in the background.

    Launches the coroutine as an asyncio task and holds a reference to the
    task until it completes. Exceptions raised inside the task are logged
    with their traceback rather than being lost when the task is never
    awaited.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
    )
    if name is not None:
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    Does nothing if `task` is `None`, already done, or the current task.
    """
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
