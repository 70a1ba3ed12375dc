from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class InFlightRegistry:
    """One running pipeline per key; concurrent callers for that key await the same task.

    A joiner being cancelled does not cancel the shared task. Keys are independent.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def in_flight(self) -> list[str]:
        return sorted(self._tasks)

    def running(self, key: str) -> bool:
        return key in self._tasks

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
            logger.debug("[INFLIGHT] key=%s action=start", key)
        else:
            logger.info("[INFLIGHT] key=%s action=join", key)
        return await asyncio.shield(task)
