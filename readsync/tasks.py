"""
Outbound task queue for fire-and-forget side effects.

Remote content deletion, syncs kicked off by timers and similar work is
submitted here instead of being left as a bare background call. Failures
are logged per task and never propagate to the submitter; ``drain()``
waits for everything submitted so far, which keeps ordering observable
in tests.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


class TaskQueue:
    """Tracks background coroutines on the running event loop."""

    def __init__(self):
        self._pending: set[asyncio.Task] = set()
        self.failures: list[tuple[str, BaseException]] = []

    def submit(self, coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro``; the returned task never raises."""
        label = name or getattr(coro, "__qualname__", "task")
        task = asyncio.get_running_loop().create_task(self._run(coro, label), name=label)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, coro: Awaitable[Any], label: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures.append((label, e))
            logger.warning("Background task %s failed: %s", label, e)
            return None

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until no submitted task is outstanding, including ones submitted meanwhile."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._pending):
            task.cancel()
