"""Background task bookkeeping for event-driven components.

Relay notifications and transport callbacks arrive outside of any awaiting
caller, so the components that react to them spawn tasks. ``BackgroundTasks``
keeps strong references to those tasks, logs their failures instead of
letting them vanish, and lets owners wait for quiescence or cancel everything
on shutdown.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """A set of fire-and-forget tasks owned by one component."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, label: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` and keep a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        task.set_name(f"{self.name}:{label or 'task'}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    async def wait(self, rounds: int = 100):
        """Wait until no tasks are pending, including ones spawned meanwhile."""
        for _ in range(rounds):
            await asyncio.sleep(0)
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self):
        """Cancel every pending task and wait for them to unwind."""
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
