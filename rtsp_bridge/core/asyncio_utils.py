"""Asyncio helpers for background stream tasks."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Iterable, Optional

from .logging_utils import LoggerLike, ensure_structured_logger


def _task_label(task: asyncio.Task[Any], context: Optional[str]) -> str:
    if context:
        return context
    name = task.get_name()
    return name or "background task"


def add_task_exception_logger(
    task: asyncio.Task[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Ensure task exceptions are retrieved and logged.

    Fire-and-forget tasks (pipe pumps, feeders, process monitors) otherwise
    surface failures as "Task exception was never retrieved" warnings long
    after the stream that owned them is gone.
    """
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")

    def _done(done_task: asyncio.Task[Any]) -> None:
        try:
            done_task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            task_logger.exception(
                "Unhandled exception in %s",
                _task_label(done_task, context),
            )

    task.add_done_callback(_done)
    return task


def create_logged_task(
    coro: Awaitable[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    pending: Optional[set[asyncio.Task[Any]]] = None,
) -> asyncio.Task[Any]:
    """Create a task that won't lose exceptions, optionally tracking it."""
    if loop is None:
        loop = asyncio.get_running_loop()

    task = loop.create_task(coro)
    if context:
        task.set_name(context)

    add_task_exception_logger(task, logger=logger, context=context)

    if pending is not None:
        pending.add(task)
        task.add_done_callback(pending.discard)

    return task


async def cancel_tasks(
    tasks: Iterable[Optional[asyncio.Task[Any]]],
    *,
    logger: LoggerLike = None,
) -> None:
    """Cancel ``tasks`` and wait for them, skipping the caller's own task."""
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")
    current = asyncio.current_task()
    waiting = []
    for task in list(tasks):
        if task is None or task is current or task.done():
            continue
        task.cancel()
        waiting.append(task)
    for task in waiting:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            task_logger.exception("Error while cancelling %s", task.get_name())


__all__ = ["add_task_exception_logger", "cancel_tasks", "create_logged_task"]
