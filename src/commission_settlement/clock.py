"""Time sources used by the ledger and the write pipeline."""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Protocol


class Clock(Protocol):
    """Anything able to report the current moment."""

    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    """Clock backed by the system time, always timezone-aware (UTC)."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock frozen at a given moment, useful for replays and tests."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def now(self) -> datetime:
        return self.moment

    def today(self) -> date:
        return self.moment.date()
