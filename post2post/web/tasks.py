# post2post/web/tasks.py
from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Any, Set

logger = logging.getLogger("post2post.tasks")


class TaskSupervisor:
    """
    Owns background tasks spawned by request handlers so they can be
    cancelled together on shutdown instead of being orphaned.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError("task supervisor is shut down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def join(self) -> None:
        """Wait for every task currently running (used by tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info("cancelling %d background task(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
