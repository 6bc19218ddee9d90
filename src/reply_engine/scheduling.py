"""Clock and cancellable timers.

The engine never calls ``time`` or ``asyncio`` directly for timing; it takes a
clock and a scheduler so debounce behaviour can be driven by tests without
waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Protocol

Clock = Callable[[], int]


def system_clock() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Schedules on the running event loop (or an explicitly given one)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)
