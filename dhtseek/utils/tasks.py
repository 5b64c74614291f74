"""Task helpers for tracking and cancelling background tasks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTaskGroup:
    """Tracks fire-and-forget tasks so they can be cancelled together.

    Finished tasks are forgotten automatically. Exceptions escaping a task are
    logged once instead of surfacing as "exception was never retrieved".
    """

    def __init__(self, name: str = "tasks") -> None:
        """Initialize empty task group."""
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def create(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track an asyncio task from a coroutine."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s in group %s failed: %s",
                task.get_name(),
                self.name,
                exc,
                exc_info=exc,
            )

    async def cancel_and_wait(self, timeout: float | None = None) -> None:
        """Cancel all tracked tasks and wait for completion (with optional timeout)."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        for t in tasks:
            if not t.done():
                t.cancel()
        if timeout is None:
            await asyncio.gather(*tasks, return_exceptions=True)
        else:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=timeout,
                )
        self._tasks.clear()
