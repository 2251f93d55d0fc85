"""Cancellable pacing waits between remote queries."""
from __future__ import annotations

import math
import threading
import time
from typing import Callable, Optional, Protocol


class Clock(Protocol):
    def monotonic(self) -> float:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class Pacer:
    """Sleeps in short ticks so a countdown can be surfaced and cancellation seen promptly."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        cancel_event: Optional[threading.Event] = None,
        tick_seconds: float = 1.0,
    ) -> None:
        self.clock = clock or SystemClock()
        self.cancel_event = cancel_event or threading.Event()
        self.tick_seconds = max(0.01, float(tick_seconds))

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def wait(self, seconds: float, on_tick: Optional[Callable[[int], None]] = None) -> bool:
        """Block for `seconds`. Returns False if cancelled before the wait completed."""
        if self.cancelled:
            return False
        deadline = self.clock.monotonic() + max(0.0, float(seconds))
        while True:
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                return True
            if on_tick is not None:
                on_tick(int(math.ceil(remaining)))
            self.clock.sleep(min(self.tick_seconds, remaining))
            if self.cancelled:
                return False
