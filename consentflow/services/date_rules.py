"""Pure date rules for consent expiry and contact inactivity.

All functions are deterministic and free of I/O; "now" is always passed
in.  Durations expressed in months use calendar-month arithmetic via
:class:`dateutil.relativedelta.relativedelta` (day-of-month is preserved
and clamped at month end, so Jan 31 + 1 month is Feb 28/29).  Day-based
thresholds use plain :class:`~datetime.timedelta`.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

_SECONDS_PER_DAY = 24 * 60 * 60


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    return value + relativedelta(months=months)


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)


def consent_expiry(consent_date: datetime, expiry_months: int) -> datetime:
    """Date on which consent given at *consent_date* lapses."""
    return add_months(consent_date, expiry_months)


def is_consent_expiring(
    consent_date: datetime | None,
    expiry_months: int,
    grace_days: int,
    now: datetime,
) -> bool:
    """True if consent has expired or will expire within *grace_days*.

    A missing consent date counts as expiring: there is no basis on file.
    """
    if consent_date is None:
        return True
    return consent_expiry(consent_date, expiry_months) <= add_days(now, grace_days)


def is_inactive(
    last_activity_date: datetime | None,
    threshold_months: int,
    now: datetime,
) -> bool:
    """True if there is no activity on record, or it predates the threshold."""
    if last_activity_date is None:
        return True
    return last_activity_date < add_months(now, -threshold_months)


def days_between(a: datetime, b: datetime) -> int:
    """Whole days between two instants, order-independent, truncated."""
    return abs(b - a).days


def days_until(target: datetime, now: datetime) -> int:
    """Days from *now* until *target*, rounded up; negative once past."""
    return math.ceil((target - now).total_seconds() / _SECONDS_PER_DAY)


def start_of_day_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# CRM value encoding
# ---------------------------------------------------------------------------


def parse_datetime(value: str | None) -> datetime | None:
    """Parse a CRM date property; returns ``None`` for empty or invalid input.

    Accepts ISO-8601 datetimes, bare ``YYYY-MM-DD`` dates and epoch
    milliseconds (HubSpot emits all three depending on property type).
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=UTC)
        return ensure_utc(isoparse(text))
    except (ValueError, OverflowError, OSError):
        return None


def format_datetime(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    utc = ensure_utc(value)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"
