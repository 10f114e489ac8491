"""Safely spawn asyncio background tasks with error handling."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine, logs the traceback,
    and re-raises the exception.
    """
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def log_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that logs the task exception and keeps running."""
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Launches the coroutine as an asyncio task and sets the done
    callback to [`log_on_error()`][signalrelay.utils.tasks.log_on_error].
    This is "safe" because exceptions inside the task are always logged
    and retrieved. Otherwise, background tasks that are not awaited may
    fail silently. A failed task never stops the server.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
    )
    task.add_done_callback(log_on_error)
    return task


def log_unhandled_exception(
    loop: asyncio.AbstractEventLoop,
    context: dict[str, Any],
) -> None:
    """Event loop exception handler that logs and continues running.

    Install with
    [`loop.set_exception_handler()`][asyncio.loop.set_exception_handler].
    """
    exception = context.get('exception')
    message = context.get('message', 'Unhandled exception in event loop')
    if exception is not None:
        logger.error(
            f'{message}: {exception!r}',
            exc_info=(type(exception), exception, exception.__traceback__),
        )
    else:
        logger.error(message)
