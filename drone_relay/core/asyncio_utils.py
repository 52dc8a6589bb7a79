"""Helpers for fire-and-forget tasks that must not lose their exceptions."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional

from .logging_utils import LoggerLike, ensure_component_logger


def add_task_exception_logger(
    task: "asyncio.Task[Any]",
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> "asyncio.Task[Any]":
    """Retrieve and log the task's exception when it finishes."""
    task_logger = ensure_component_logger(logger, fallback_name="asyncio")
    label = context or task.get_name()

    def _done(done_task: "asyncio.Task[Any]") -> None:
        if done_task.cancelled():
            return
        exc = done_task.exception()
        if exc is not None:
            task_logger.error("Unhandled exception in %s", label, exc_info=exc)

    task.add_done_callback(_done)
    return task


def create_logged_task(
    coro: Coroutine[Any, Any, Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
    pending: Optional[set] = None,
) -> "asyncio.Task[Any]":
    """Create a task whose failure is logged, optionally tracking it in ``pending``."""
    task = asyncio.get_running_loop().create_task(coro, name=context)
    add_task_exception_logger(task, logger=logger, context=context)

    if pending is not None:
        pending.add(task)
        task.add_done_callback(pending.discard)

    return task


async def cancel_and_wait(task: Optional["asyncio.Task[Any]"]) -> None:
    """Cancel ``task`` and wait until it has actually finished."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


__all__ = ["add_task_exception_logger", "create_logged_task", "cancel_and_wait"]
