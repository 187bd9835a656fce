"""
Background tasks keyed by conversation.

Summary reconciliation and usage enrichment run fire-and-forget. Scheduling
a key whose previous task is still pending cancels the stale task, so work
for the same conversation supersedes instead of racing. Between different
keys the last save wins.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class BackgroundTasks:
    """Registry of fire-and-forget asyncio tasks."""

    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, factory: TaskFactory) -> asyncio.Task:
        """
        Start a task for key, cancelling a still-pending task with the same key.

        Args:
            key: e.g. (timestamp, "summary")
            factory: Zero-argument callable returning the coroutine to run

        Returns:
            The new task
        """
        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            logger.debug("[background] Superseding pending task %s", key)
            previous.cancel()

        task = asyncio.get_running_loop().create_task(self._run(key, factory))
        self._tasks[key] = task
        task.add_done_callback(lambda t, key=key: self._discard(key, t))
        return task

    async def _run(self, key: Hashable, factory: TaskFactory) -> Any:
        try:
            return await factory()
        except asyncio.CancelledError:
            logger.debug("[background] Task %s cancelled", key)
            raise
        except Exception as e:
            logger.exception("[background] Task %s failed: %s", key, e)
            return None

    def _discard(self, key: Hashable, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def pending(self) -> List[Hashable]:
        """Keys of tasks that have not finished yet."""
        return [key for key, task in self._tasks.items() if not task.done()]

    def is_pending(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def drain(self) -> None:
        """Wait until every task, including ones scheduled meanwhile, has finished."""
        while self._tasks:
            tasks = list(self._tasks.values())
            await asyncio.gather(*tasks, return_exceptions=True)
            for key in [k for k, t in self._tasks.items() if t.done()]:
                del self._tasks[key]

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
