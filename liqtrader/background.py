"""
Fire-and-forget task tracking.

Tasks are held until they finish so they are not garbage collected, and
every outcome is captured as a BackgroundResult instead of being lost.
"""

import asyncio
from dataclasses import dataclass
from typing import Deque, Optional, Set
from collections import deque

from utils.logger import log


@dataclass
class BackgroundResult:
    name: str
    attempted: bool = True
    succeeded: bool = False
    error: Optional[str] = None


class BackgroundTasks:
    def __init__(self, keep: int = 200):
        self._tasks: Set[asyncio.Task] = set()
        self.results: Deque[BackgroundResult] = deque(maxlen=keep)

    def spawn(self, name: str, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._done(name, t))
        return task

    def _done(self, name: str, task: asyncio.Task):
        self._tasks.discard(task)
        result = BackgroundResult(name=name)
        if task.cancelled():
            result.error = "cancelled"
        elif task.exception() is not None:
            result.error = repr(task.exception())
            log.error(f"Background task {name} failed: {result.error}")
        else:
            result.succeeded = True
        self.results.append(result)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait until no tasks are in flight (including ones spawned meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
