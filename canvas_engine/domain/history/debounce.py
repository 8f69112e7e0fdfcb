from typing import Callable, Optional
from enum import Enum
import time


class Clock:
    """Source of monotonic time in seconds"""

    def now(self) -> float:
        raise NotImplementedError


class MonotonicClock(Clock):
    def now(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now


class DebounceState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"


class Debouncer:
    """Single-shot timer: every touch pushes the deadline back.

    Nothing fires on its own; the owner calls ``poll()`` (from a background
    loop, or directly in tests) and the callback runs once the quiet period
    has elapsed since the last ``touch()``.
    """

    def __init__(self, delay: float, callback: Callable[[], object], clock: Optional[Clock] = None):
        self.delay = delay
        self.callback = callback
        self.clock = clock or MonotonicClock()
        self.state = DebounceState.IDLE
        self._deadline: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self.state == DebounceState.PENDING

    def touch(self) -> None:
        """Arm the timer, or reset it if it is already armed"""

        self.state = DebounceState.PENDING
        self._deadline = self.clock.now() + self.delay

    def poll(self) -> bool:
        """Fire the callback if the deadline has passed"""

        if self.state != DebounceState.PENDING or self._deadline is None:
            return False
        if self.clock.now() < self._deadline:
            return False
        return self._fire()

    def flush(self) -> bool:
        """Fire immediately if armed"""

        if self.state != DebounceState.PENDING:
            return False
        return self._fire()

    def cancel(self) -> None:
        self.state = DebounceState.IDLE
        self._deadline = None

    def _fire(self) -> bool:
        # Disarm first so a callback that touches again re-arms cleanly
        self.cancel()
        self.callback()
        return True
