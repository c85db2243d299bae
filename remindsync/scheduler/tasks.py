import asyncio
import logging
from typing import Awaitable, Optional, Set

from remindsync.services.error_log import ErrorCategory, ErrorLog, Severity

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Fire-and-forget coroutines with one place that logs their failures."""

    def __init__(self, error_log: Optional[ErrorLog] = None):
        self.error_log = error_log
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Awaitable, name: str, category: ErrorCategory = ErrorCategory.GENERAL) -> asyncio.Task:
        """
        Run ``coro`` in the background without blocking the caller.

        Args:
            coro: Coroutine to run
            name: Short description used in log lines
            category: Error log category for failures
        """
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._done(t, name, category))
        return task

    def _done(self, task: asyncio.Task, name: str, category: ErrorCategory):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.error(f"Background task {name} failed: {str(error)}")
        if self.error_log is not None:
            record = asyncio.ensure_future(
                self.error_log.record(
                    "BACKGROUND_TASK_FAILED",
                    f"{name} failed: {error}",
                    category=category,
                    severity=Severity.ERROR,
                )
            )
            self._tasks.add(record)
            record.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self):
        """Wait until every submitted task, including failure logging, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            # Let done callbacks run so they can submit follow-up tasks
            await asyncio.sleep(0)

    async def cancel_all(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
