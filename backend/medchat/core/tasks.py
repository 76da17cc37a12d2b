"""
Detached background tasks.

Usage inserts and retrieval counters are scheduled without awaiting them.
TaskRunner keeps a strong reference to every task until it finishes and
logs any exception at the task boundary, so a failing side effect can
never surface as an unhandled error in the caller.
"""

import asyncio
from collections.abc import Awaitable

from loguru import logger


class TaskRunner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, label: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(coro: Awaitable, label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning("[tasks] {} failed: {}", label, e)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task scheduled so far, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
