"""
Single-slot debouncer.

Holds at most one pending payload and one timer handle. Each ``schedule``
cancels the armed timer and replaces the payload, so a burst of requests
produces one action carrying the most recent payload once the quiet period
has elapsed. ``flush`` runs the action immediately for work that must not
be coalesced.

A payload whose timer has fired stays visible through ``pending`` until
its action has run, and actions never overlap. A flush supersedes any
fired payload that has not been written yet.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .clock import Timer, TimerHandle
from .tasks import TaskQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EMPTY = object()


class Debouncer(Generic[T]):
    """Coalesces requests into one call of ``action`` per quiet period."""

    def __init__(
        self,
        timer: Timer,
        delay_ms: int,
        action: Callable[[T], Awaitable[Any]],
        tasks: TaskQueue,
        *,
        name: str = "debounce",
    ):
        self._timer = timer
        self._delay_ms = delay_ms
        self._action = action
        self._tasks = tasks
        self._name = name
        self._payload: Any = _EMPTY
        self._in_flight: Any = _EMPTY
        self._handle: Optional[TimerHandle] = None
        self._running = asyncio.Lock()

    @property
    def has_pending(self) -> bool:
        return self._payload is not _EMPTY or self._in_flight is not _EMPTY

    @property
    def pending(self) -> Optional[T]:
        """The newest payload not yet written, or None."""
        if self._payload is not _EMPTY:
            return self._payload
        if self._in_flight is not _EMPTY:
            return self._in_flight
        return None

    def schedule(self, payload: T) -> None:
        """Replace the pending payload and restart the quiet period."""
        self._cancel_timer()
        self._payload = payload
        self._handle = self._timer.call_later(self._delay_ms, self._fire)

    def cancel(self) -> None:
        """Drop the pending payload without running the action."""
        self._cancel_timer()
        self._payload = _EMPTY
        self._in_flight = _EMPTY

    async def flush(self, payload: Any = _EMPTY) -> None:
        """
        Run the action now with ``payload`` (or the newest unwritten one).

        The pending payload is discarded either way.
        """
        async with self._running:
            pending = self._payload if self._payload is not _EMPTY else self._in_flight
            self.cancel()
            if payload is _EMPTY:
                payload = pending
            if payload is _EMPTY:
                return
            await self._action(payload)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        payload = self._payload
        self._payload = _EMPTY
        if payload is _EMPTY:
            return
        self._in_flight = payload
        self._tasks.submit(self._write(payload), name=self._name)

    async def _write(self, payload: Any) -> None:
        async with self._running:
            if self._in_flight is not payload:
                logger.debug("%s: fired payload superseded", self._name)
                return
            try:
                await self._action(payload)
            finally:
                if self._in_flight is payload:
                    self._in_flight = _EMPTY
