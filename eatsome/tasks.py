# eatsome/tasks.py
import asyncio
from collections import deque
from typing import Awaitable, Deque, Dict, Hashable, Optional, Set, Tuple

import structlog

logger = structlog.get_logger()


class TaskSupervisor:
    """
    Owns fire-and-forget background work.

    Every task is tracked until it finishes; an exception is logged and kept
    in `failures` (only the latest `max_failures`) instead of vanishing with
    the task. Work spawned with a `key` is deduplicated while a task for
    that key is still running.
    """

    def __init__(self, max_failures: int = 100):
        self._tasks: Set[asyncio.Task] = set()
        self._keyed: Dict[Hashable, asyncio.Task] = {}
        self.failures: Deque[Tuple[str, BaseException]] = deque(maxlen=max_failures)

    def spawn(self, coro: Awaitable, name: str, key: Optional[Hashable] = None) -> asyncio.Task:
        if key is not None:
            running = self._keyed.get(key)
            if running is not None and not running.done():
                coro.close()
                logger.info("⏭️ Task already running", task=name, key=str(key))
                return running

        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        if key is not None:
            self._keyed[key] = task
        task.add_done_callback(lambda t: self._on_done(t, key))
        return task

    def _on_done(self, task: asyncio.Task, key: Optional[Hashable]):
        self._tasks.discard(task)
        if key is not None and self._keyed.get(key) is task:
            del self._keyed[key]

        if task.cancelled():
            logger.warning("🛑 Background task cancelled", task=task.get_name())
            return

        exc = task.exception()
        if exc is not None:
            self.failures.append((task.get_name(), exc))
            logger.error(
                "❌ Background task failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self):
        """Wait until every task, including ones spawned meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0):
        if not self._tasks:
            return
        logger.info("⏳ Waiting for background tasks", pending=len(self._tasks))
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
