"""Time source used for every deadline comparison."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime.

    SQLite (via SQLModel) strips timezone info on round-trip, so all
    stored timestamps are naive-UTC.  Using naive-UTC everywhere
    avoids "can't subtract offset-naive and offset-aware" errors.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()
