"""Round timer and whole-second countdowns.

Both are driven by the caller's clock: every method that needs the time takes
``now_ms`` so tests can run them without sleeping. Stopping or cancelling an
idle timer is always a no-op.
"""

from __future__ import annotations

import math
from typing import Callable, Optional

from .geometry import js_round


def format_time(ms: float) -> str:
    """Render milliseconds as ``M:SS``, rounding partial seconds up."""
    total_seconds = math.ceil(max(0.0, ms) / 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"


class GameTimer:
    """Round time limit. ``on_time_up`` fires at most once per start."""

    def __init__(self, time_limit_ms: float, on_time_up: Optional[Callable[[], None]] = None):
        self.time_limit_ms = time_limit_ms
        self.on_time_up = on_time_up
        self.start_ms: Optional[float] = None
        self.running = False

    def start(self, now_ms: float) -> float:
        self.start_ms = now_ms
        self.running = True
        return now_ms

    def stop(self, now_ms: Optional[float] = None) -> int:
        """Stop the timer and return elapsed ms (0 when it never started)."""
        self.running = False
        if now_ms is None or self.start_ms is None:
            return 0
        return max(0, js_round(now_ms - self.start_ms))

    def reset(self) -> None:
        self.running = False
        self.start_ms = None

    def elapsed(self, now_ms: float) -> int:
        if self.start_ms is None:
            return 0
        return max(0, js_round(now_ms - self.start_ms))

    def remaining(self, now_ms: float) -> int:
        if self.start_ms is None:
            return js_round(self.time_limit_ms)
        return max(0, js_round(self.time_limit_ms - (now_ms - self.start_ms)))

    def expired(self, now_ms: float) -> bool:
        return self.start_ms is not None and now_ms - self.start_ms >= self.time_limit_ms

    def check(self, now_ms: float) -> bool:
        """Fire ``on_time_up`` if the limit has passed while running."""
        if not self.running or not self.expired(now_ms):
            return False
        self.running = False
        if self.on_time_up is not None:
            self.on_time_up()
        return True

    def format_remaining(self, now_ms: float) -> str:
        return format_time(self.remaining(now_ms))


class Countdown:
    """Visible countdown in whole seconds; purely presentational."""

    def __init__(self, duration_ms: float, on_complete: Optional[Callable[[], None]] = None):
        self.duration_ms = duration_ms
        self.on_complete = on_complete
        self.start_ms: Optional[float] = None
        self.running = False
        self.finished = False

    @classmethod
    def seconds(cls, seconds: int, on_complete: Optional[Callable[[], None]] = None) -> "Countdown":
        return cls(seconds * 1000, on_complete)

    def start(self, now_ms: float) -> None:
        self.start_ms = now_ms
        self.running = True
        self.finished = False

    def cancel(self) -> None:
        self.running = False

    def remaining_seconds(self, now_ms: float) -> int:
        if self.start_ms is None:
            return math.ceil(self.duration_ms / 1000)
        remaining = self.duration_ms - (now_ms - self.start_ms)
        return max(0, math.ceil(remaining / 1000))

    def tick(self, now_ms: float) -> bool:
        """Return True on the call that completes the countdown."""
        if not self.running or now_ms - self.start_ms < self.duration_ms:
            return False
        self.running = False
        self.finished = True
        if self.on_complete is not None:
            self.on_complete()
        return True
