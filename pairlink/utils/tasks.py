"""Spawn and cancel asyncio background tasks with error logging."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


def _log_task_error(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None:
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{exception!r}\n'
            + ''.join(traceback.format_exception(exception)),
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[None]:
    """Run a coroutine in the background and log any exception it raises.

    Background tasks that are never awaited swallow their exceptions, so
    a done callback is attached which logs the traceback. The exception is
    still stored on the task for callers that do await it.

    Args:
        coro: Coroutine function to run as a task.
        args: Positional arguments for the coroutine.
        name: Optional task name used in log messages.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(coro(*args, **kwargs), name=name)
    task.add_done_callback(_log_task_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    No-op if `task` is `None` or already done. The calling task is never
    the one cancelled here, so the `CancelledError` raised by awaiting the
    cancelled task is consumed.
    """
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
