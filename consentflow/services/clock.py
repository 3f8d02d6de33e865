"""Injectable source of "now" for lifecycle decisions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from consentflow.services.date_rules import ensure_utc


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    __slots__ = ()

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock:
    """A clock frozen at a given instant; advance it explicitly."""

    __slots__ = ("_now",)

    def __init__(self, now: datetime) -> None:
        self._now = ensure_utc(now)

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = ensure_utc(now)

    def advance(self, **delta: float) -> datetime:
        """Move forward by a :class:`timedelta` built from *delta* kwargs."""
        self._now = self._now + timedelta(**delta)
        return self._now
