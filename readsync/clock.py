"""
Time sources for the sync engine.

The scheduler, debouncers and services never read the system clock or
create timers directly; they take a ``Clock``, a ``Timer`` and an
``AlarmFacility`` so tests can drive time by hand.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .types import now_ms

logger = logging.getLogger(__name__)


@runtime_checkable
class Clock(Protocol):
    def now(self) -> int:
        """Current time in epoch milliseconds."""
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


@runtime_checkable
class Timer(Protocol):
    def call_later(self, delay_ms: int, callback: Callable[[], Any]) -> TimerHandle:
        """Run ``callback`` once after ``delay_ms``."""
        ...


@runtime_checkable
class AlarmFacility(Protocol):
    """Named recurring alarms, delivered to a single handler by name."""

    def create(self, name: str, period_ms: int) -> None: ...

    def clear(self, name: str) -> None: ...

    def set_handler(self, handler: Callable[[str], Any]) -> None: ...


class SystemClock:
    """Wall clock."""

    def now(self) -> int:
        return now_ms()


class LoopTimer:
    """One-shot timers on the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_later(self, delay_ms: int, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay_ms / 1000, callback)


class LoopAlarms:
    """
    Recurring alarms backed by asyncio tasks.

    Each alarm sleeps for its period, then awaits the handler with the
    alarm name. Re-creating an alarm replaces the previous one.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._handler: Optional[Callable[[str], Any]] = None

    def set_handler(self, handler: Callable[[str], Any]) -> None:
        self._handler = handler

    def create(self, name: str, period_ms: int) -> None:
        self.clear(name)
        self._tasks[name] = asyncio.get_running_loop().create_task(
            self._run(name, period_ms), name=f"alarm:{name}",
        )
        logger.debug("Alarm %s armed every %ds", name, period_ms // 1000)

    def clear(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()

    def clear_all(self) -> None:
        for name in list(self._tasks):
            self.clear(name)

    def active(self) -> list[str]:
        return sorted(self._tasks)

    async def _run(self, name: str, period_ms: int) -> None:
        while True:
            await asyncio.sleep(period_ms / 1000)
            if self._handler is None:
                continue
            try:
                result = self._handler(name)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Alarm %s handler failed: %s", name, e)
