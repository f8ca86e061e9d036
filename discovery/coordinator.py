"""Single-flight, debounced task scheduling keyed by logical stream.

Each key owns at most one pending timer and at most one in-flight task.
Scheduling under a key replaces its timer; starting a task under a key
cancels the previous in-flight task (which aborts its httpx request) and
bumps the key's generation. Tasks receive a FetchTicket and must call
`ticket.ensure_current()` after every await before touching shared state.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .http import RequestCancelled, RequestMetrics

logger = logging.getLogger(__name__)

TaskFn = Callable[["FetchTicket"], Awaitable[Any]]


@dataclass
class _Slot:
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional["asyncio.Task[Any]"] = None
    generation: int = 0
    error: Optional[BaseException] = None
    idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.idle.set()

    def refresh_idle(self) -> None:
        if self.timer is None and self.task is None:
            self.idle.set()
        else:
            self.idle.clear()


class FetchTicket:
    def __init__(self, coordinator: "QueryCoordinator", key: str, generation: int) -> None:
        self._coordinator = coordinator
        self.key = key
        self.generation = generation

    def is_current(self) -> bool:
        return self._coordinator.generation(self.key) == self.generation

    def ensure_current(self) -> None:
        if not self.is_current():
            raise RequestCancelled(f"{self.key} generation {self.generation} superseded")


class QueryCoordinator:
    def __init__(self, metrics: Optional[RequestMetrics] = None) -> None:
        self.metrics = metrics
        self._slots: Dict[str, _Slot] = {}

    def _slot(self, key: str) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot()
            self._slots[key] = slot
        return slot

    def generation(self, key: str) -> int:
        slot = self._slots.get(key)
        return slot.generation if slot else 0

    def has_pending(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.timer is not None)

    def in_flight(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.task is not None and not slot.task.done())

    def schedule(self, key: str, delay_ms: float, task: TaskFn) -> None:
        """Debounce: (re)arm the key's timer; the last task scheduled wins."""
        loop = asyncio.get_running_loop()
        slot = self._slot(key)
        if slot.timer is not None:
            slot.timer.cancel()
        slot.timer = loop.call_later(max(0.0, delay_ms) / 1000.0, self._fire, key, task)
        slot.refresh_idle()

    async def run_now(self, key: str, task: TaskFn) -> Any:
        """Run immediately under the single-flight rule and await the result.

        Returns None when this run is itself superseded or cancelled.
        """
        slot = self._slot(key)
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        running = self._start(key, task, awaited=True)
        try:
            return await asyncio.shield(running)
        except asyncio.CancelledError:
            if running.cancelled():
                return None
            # the awaiting caller itself was cancelled
            running.cancel()
            raise

    def cancel(self, key: str) -> None:
        slot = self._slots.get(key)
        if slot is None:
            return
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        if slot.task is not None and not slot.task.done():
            slot.generation += 1
            slot.task.cancel()
        slot.refresh_idle()

    def close(self) -> None:
        for key in list(self._slots):
            self.cancel(key)

    async def wait_idle(self, key: str) -> None:
        """Wait until the key has no pending timer and no in-flight task.

        Re-raises, once, an exception a scheduled task let escape.
        """
        slot = self._slot(key)
        while True:
            await slot.idle.wait()
            # yield so done-callbacks queued on the same tick run first
            await asyncio.sleep(0)
            if slot.idle.is_set():
                break
        if slot.error is not None:
            error, slot.error = slot.error, None
            raise error

    def _fire(self, key: str, task: TaskFn) -> None:
        slot = self._slot(key)
        slot.timer = None
        self._start(key, task)

    def _start(self, key: str, task: TaskFn, awaited: bool = False) -> "asyncio.Task[Any]":
        slot = self._slot(key)
        if slot.task is not None and not slot.task.done():
            logger.debug("Cancelling in-flight %s (generation %s)", key, slot.generation)
            slot.task.cancel()
        slot.generation += 1
        ticket = FetchTicket(self, key, slot.generation)
        running = asyncio.ensure_future(self._guard(ticket, task))
        slot.task = running
        slot.error = None
        running.add_done_callback(lambda t: self._on_done(key, t, awaited))
        slot.refresh_idle()
        return running

    async def _guard(self, ticket: FetchTicket, task: TaskFn) -> Any:
        try:
            return await task(ticket)
        except asyncio.CancelledError:
            logger.debug("Request %s generation %s cancelled", ticket.key, ticket.generation)
            if self.metrics is not None:
                self.metrics.inc_cancelled(ticket.key)
            raise
        except RequestCancelled:
            logger.debug("Dropped stale result for %s generation %s", ticket.key, ticket.generation)
            if self.metrics is not None:
                self.metrics.inc_stale(ticket.key)
            return None

    def _on_done(self, key: str, running: "asyncio.Task[Any]", awaited: bool) -> None:
        slot = self._slots.get(key)
        if slot is None:
            return
        if slot.task is running:
            slot.task = None
            # run_now callers receive their own exception
            if not awaited and not running.cancelled() and running.exception() is not None:
                slot.error = running.exception()
        elif not running.cancelled() and not awaited:
            # retrieve so a superseded failure is not reported as unhandled
            running.exception()
        slot.refresh_idle()
