"""Background task helpers shared by the read path and the scheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


def setup_global_exception_handler() -> None:
    """Log exceptions that escape fire-and-forget tasks on the running loop."""

    def handle_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exception = context.get("exception")
        message = context.get("message", "Unhandled exception in async task")
        if exception:
            logger.error("Asyncio exception handler caught: %s", message, exc_info=exception)
        else:
            logger.error("Asyncio exception handler caught: %s (context: %s)", message, context)

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running loop to install exception handler yet")
        return
    loop.set_exception_handler(handle_exception)
    logger.info("Global asyncio exception handler installed")


def safe_background_task(
    task_name: str,
    task_coro: Coroutine[Any, Any, Any],
    *,
    shutdown: Optional["GracefulShutdown"] = None,
) -> asyncio.Task:
    """
    Create a background task that logs instead of losing its exception.

    Args:
        task_name: Human-readable name for the task
        task_coro: The coroutine to run
        shutdown: Optional tracker that will drain the task on shutdown

    Returns:
        The created asyncio.Task
    """

    async def wrapped() -> Any:
        try:
            return await task_coro
        except asyncio.CancelledError:
            logger.debug("Background task '%s' cancelled", task_name)
            raise
        except Exception:
            logger.exception("Background task '%s' failed with unhandled exception", task_name)
            raise

    task = asyncio.create_task(wrapped(), name=task_name)
    if shutdown is not None:
        shutdown.add_task(task)
    return task


class GracefulShutdown:
    """Tracks background tasks so they can be drained on shutdown."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self.tasks: set[asyncio.Task] = set()

    def add_task(self, task: asyncio.Task) -> None:
        self.tasks.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        if not task.cancelled():
            # Mark the exception as retrieved; safe_background_task already logged it.
            task.exception()

    async def drain(self) -> None:
        """Wait for tracked tasks to finish, cancelling stragglers after the timeout."""
        pending = [task for task in self.tasks if not task.done()]
        if not pending:
            return

        logger.info("Waiting for %d background tasks to finish", len(pending))
        done, still_pending = await asyncio.wait(pending, timeout=self.timeout)
        if not still_pending:
            return

        logger.warning(
            "Timeout waiting for background tasks after %.1fs, cancelling %d",
            self.timeout,
            len(still_pending),
        )
        for task in still_pending:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)


__all__ = ["GracefulShutdown", "safe_background_task", "setup_global_exception_handler"]
