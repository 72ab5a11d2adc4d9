"""
AESO Backfill — Month windows and timestamp normalisation

Month arithmetic
----------------
A backfill job covers ``start_year``..``end_year`` inclusive, i.e.
``(end_year - start_year + 1) * 12`` months.  A month *offset* counts months
from January of ``start_year`` (offset 0 = Jan start_year, 12 = Jan start_year+1).

Month windows are half-open UTC intervals ``[first-of-month, first-of-next)``;
stored timestamps are UTC, so grouping and range filters use UTC months.

Canonical timestamps
--------------------
Every timestamp that is matched against stored rows goes through
``to_utc_hour`` first: parsed, made UTC-aware (naive input is taken as UTC)
and floored to the hour.  Upstream feeds and stored rows therefore meet on a
single representation.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

import pandas as pd

MARKET_TIMEZONE = ZoneInfo("America/Edmonton")
UTC = timezone.utc


# ---------------------------------------------------------------------------
# Month windows
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class MonthWindow:
    """One calendar month."""

    year:  int
    month: int

    @classmethod
    def containing(cls, ts: datetime) -> MonthWindow:
        ts = ts.astimezone(UTC) if ts.tzinfo else ts
        return cls(ts.year, ts.month)

    @property
    def start(self) -> datetime:
        """First instant of the month, UTC."""
        return datetime(self.year, self.month, 1, tzinfo=UTC)

    @property
    def end(self) -> datetime:
        """First instant of the following month, UTC (exclusive bound)."""
        return self.next().start

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def next(self) -> MonthWindow:
        if self.month == 12:
            return MonthWindow(self.year + 1, 1)
        return MonthWindow(self.year, self.month + 1)


def total_months(start_year: int, end_year: int) -> int:
    """Number of months in the inclusive year range (0 for an inverted range)."""
    return max(0, (end_year - start_year + 1) * 12)


def month_at(start_year: int, offset: int) -> MonthWindow:
    """The month ``offset`` months after January of ``start_year``."""
    return MonthWindow(start_year + offset // 12, offset % 12 + 1)


def batch_window(
    start_year: int,
    end_year: int,
    batch_months: int,
    offset_months: int,
) -> tuple[list[MonthWindow], int]:
    """
    Resolve the months covered by one offset-driven batch.

    Returns the months ``[offset, min(offset + batch, total))`` in ascending
    order plus the offset the next invocation should resume from.
    """
    total = total_months(start_year, end_year)
    start = max(0, offset_months)
    end = min(start + max(0, batch_months), total)
    if end <= start:
        return [], max(start, end)
    return [month_at(start_year, i) for i in range(start, end)], end


def year_bounds(start_year: int, end_year: int) -> tuple[datetime, datetime]:
    """UTC ``[Jan 1 start_year, Jan 1 end_year+1)`` bounds for range filters."""
    return (
        datetime(start_year, 1, 1, tzinfo=UTC),
        datetime(end_year + 1, 1, 1, tzinfo=UTC),
    )


def first_months(timestamps: Iterable[datetime], limit: int) -> list[MonthWindow]:
    """Distinct months of ``timestamps`` in ascending order, at most ``limit``."""
    months = sorted({MonthWindow.containing(ts) for ts in timestamps})
    return months[: max(0, limit)]


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def to_utc_hour(value: Any) -> Optional[datetime]:
    """
    Normalise a timestamp-like value to an aware UTC datetime on the hour.

    Accepts ``datetime``, ``pandas.Timestamp`` and strings such as
    ``"2024-01-01 07:00"``, ``"2024-01-01T07:00"`` or ISO strings with an
    offset.  Returns ``None`` for empty or unparseable input.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(ts):
        return None
    ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    return ts.floor("h").to_pydatetime()


def market_local(ts: datetime) -> datetime:
    """Convert a UTC timestamp to Alberta market time."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(MARKET_TIMEZONE)


def calendar_fields(ts: datetime) -> dict[str, Any]:
    """Calendar columns for a price row, taken in market local time."""
    local = market_local(ts)
    day_of_week = (local.weekday() + 1) % 7  # 0 = Sunday
    return {
        "hour_of_day": local.hour,
        "day_of_week": day_of_week,
        "month":       local.month,
        "is_weekend":  day_of_week in (0, 6),
    }


def hours_between(start: date, end: date) -> int:
    """Hourly rows expected from ``start`` through the end of ``end``."""
    return max(0, ((end - start) + timedelta(days=1)).days * 24)
