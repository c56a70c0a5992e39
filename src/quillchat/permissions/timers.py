"""Cancellable timer handles used for permission expiry."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Schedules a callback after ``delay`` seconds and returns a cancellable handle."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioScheduler:
    """Scheduler backed by an asyncio event loop.

    Without an explicit loop the one running at call time is used; scheduling
    with no loop available raises ``RuntimeError`` instead of dropping the timer.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @classmethod
    def for_current_loop(cls) -> AsyncioScheduler:
        """Bind to the running loop when there is one, otherwise resolve it per call."""

        try:
            return cls(asyncio.get_running_loop())
        except RuntimeError:
            return cls()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                raise RuntimeError("AsyncioScheduler needs a running event loop or an explicit loop") from None
        if loop.is_closed():
            raise RuntimeError("AsyncioScheduler loop is closed")
        return loop.call_later(max(0.0, delay), callback)


@dataclass(order=True)
class _ManualTimer:
    deadline: float
    sequence: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler driven by :meth:`advance`.

    Used for replaying recorded sessions, where wall-clock time must not elapse.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._timers: list[_ManualTimer] = []
        self._counter = itertools.count()

    @property
    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(0.0, delay), next(self._counter), callback)
        heapq.heappush(self._timers, timer)
        return timer

    def advance(self, seconds: float) -> int:
        """Move time forward, firing due timers in deadline order. Returns the fired count."""

        target = self._now + seconds
        fired = 0
        while self._timers and self._timers[0].deadline <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.deadline
            timer.callback()
            fired += 1
        self._now = target
        return fired

    def pending(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)


__all__ = ["AsyncioScheduler", "ManualScheduler", "Scheduler", "TimerHandle"]
