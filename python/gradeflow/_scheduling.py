"""Clock/timer abstraction and the collapsing debouncer used by the record cache."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None: ...


@runtime_checkable
class Scheduler(Protocol):
    """Source of time and delayed callbacks (seconds, monotonic)."""

    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class LoopScheduler:
    """:class:`Scheduler` backed by an asyncio event loop.

    Without an explicit loop, the running loop is looked up on each call, so
    an instance can be created outside of a coroutine.
    """

    __slots__ = ("_loop",)

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def now(self) -> float:
        return self._get_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._get_loop().call_later(delay, callback)


class Debouncer:
    """Collapse bursts of calls into at most one pending run.

    A call runs ``action`` immediately when at least ``window`` seconds have
    passed since the last run. Otherwise a single run is scheduled ``window``
    seconds after the first call of the burst; further calls while it is
    pending are absorbed.
    """

    __slots__ = ("_action", "_window", "_scheduler", "_handle", "_last_run")

    def __init__(self, action: Callable[[], None], window: float, scheduler: Scheduler) -> None:
        self._action = action
        self._window = window
        self._scheduler = scheduler
        self._handle: TimerHandle | None = None
        self._last_run: float | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def last_run(self) -> float | None:
        return self._last_run

    def mark_ran(self) -> None:
        """Record that the action's effect just happened outside the debouncer."""
        self._last_run = self._scheduler.now()

    def __call__(self) -> None:
        if self._handle is not None:
            return
        now = self._scheduler.now()
        if self._last_run is None or now - self._last_run >= self._window:
            self._run()
            return
        logger.debug("Debouncing: next run in %.3fs", self._window)
        self._handle = self._scheduler.call_later(self._window, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._run()

    def _run(self) -> None:
        self._last_run = self._scheduler.now()
        self._action()
