"""Shared constants and fake clocks for the test suite."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

STRONG_PASSWORD = "Tr0ub4dor&3xyz!"
OTHER_STRONG_PASSWORD = "N3w-Secur3&Phrase!"


class FakeClock:
    """Monotonic clock for the rate limiter that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Ticker:
    """Datetime clock for the refresh token store; every reading is one second later."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 8, 0, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta
