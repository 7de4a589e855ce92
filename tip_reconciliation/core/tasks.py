"""Shielded background work that must outlive a cancelled caller."""
import asyncio
from typing import Awaitable, Set, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class InflightTasks:
    """
    Runs coroutines in tasks that a caller's cancellation cannot interrupt.

    A request handler whose client disconnects is cancelled by the server;
    the shielded task keeps running to completion so a provider answer we
    already paid for is committed. Strong references are held here until the
    task finishes so the event loop cannot garbage-collect it.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: Set["asyncio.Task[object]"] = set()

    async def shield(self, coro: Awaitable[T]) -> T:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return await asyncio.shield(task)

    def _on_done(self, task: "asyncio.Task[object]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Also surfaced to the awaiting caller, if one is still there
            logger.debug("inflight_task_failed", group=self.name, error=str(exc))

    async def drain(self) -> None:
        """Wait for every in-flight task (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
