"""
Clock abstraction.

Every "now" used by the wallet, booking and scheduler services comes from an
injected clock so time-driven transitions can be tested deterministically.
Datetimes are naive UTC, matching the DateTime columns.
"""
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock, naive UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


system_clock = SystemClock()


class FixedClock:
    """Always returns the same instant; used to stamp one scheduler sweep"""

    def __init__(self, at: datetime):
        self.at = at

    def now(self) -> datetime:
        return self.at
