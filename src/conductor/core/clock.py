"""
Timer scheduling for auto-expiring states and notifications.

Expiry is modelled as scheduled callbacks, never as blocking waits.
``LoopTimerScheduler`` drives callbacks from the running asyncio loop;
``VirtualTimerScheduler`` keeps its own clock that only moves when
``advance()`` is called, which makes timing deterministic.
"""

import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol


TimerCallback = Callable[[], None]


class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None: ...


class TimerScheduler(Protocol):
    """Clock and callback scheduling, in milliseconds."""

    def now(self) -> float: ...

    def call_later(self, delay_ms: float, callback: TimerCallback) -> TimerHandle: ...


class LoopTimerScheduler:
    """Schedules callbacks on an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time() * 1000

    def call_later(self, delay_ms: float, callback: TimerCallback) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(delay_ms, 0) / 1000, callback)


@dataclass(order=True)
class VirtualTimer:
    """A callback registered with a ``VirtualTimerScheduler``."""

    due_at: float
    seq: int
    callback: TimerCallback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class VirtualTimerScheduler:
    """
    Deterministic scheduler with a manually advanced clock.

    Callbacks fire in due-time order (ties in scheduling order) while
    ``advance()`` moves the clock; callbacks scheduled by other callbacks
    fire in the same ``advance()`` call if they fall inside the window.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = start_ms
        self._timers: list[VirtualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: TimerCallback) -> VirtualTimer:
        timer = VirtualTimer(
            due_at=self._now + max(delay_ms, 0),
            seq=next(self._seq),
            callback=callback,
        )
        heapq.heappush(self._timers, timer)
        return timer

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet cancelled callbacks."""
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, delta_ms: float) -> int:
        """
        Move the clock forward, firing every callback that becomes due.

        Returns:
            Number of callbacks fired
        """
        target = self._now + delta_ms
        fired = 0
        while self._timers and self._timers[0].due_at <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = timer.due_at
            timer.callback()
            fired += 1
        self._now = target
        return fired
