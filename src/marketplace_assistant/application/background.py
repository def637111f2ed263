"""Fire-and-forget task tracking.

Side effects such as access-count updates and knowledge writes must not delay
the client-visible response. Tasks are held here so they are not garbage
collected mid-flight, and their failures are logged instead of lost.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class BackgroundTasks:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task cancelled | name={}", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).warning(
                "Background task failed | name={} error={}", task.get_name(), exc
            )

    async def drain(self) -> None:
        """Wait for every pending task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
