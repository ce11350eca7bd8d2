from typing import Awaitable, Set
import asyncio

from companion.infrastructure.observability.logging import conversation_logger, metrics


class BackgroundTaskRunner:
    """Fire-and-forget tasks whose failures always reach the log"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            metrics.increment_counter("background.failures", tags={"task": task.get_name()})
            conversation_logger.log_background_failure(task.get_name(), error)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every outstanding task"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
