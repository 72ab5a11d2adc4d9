"""
AESO Backfill — Batch scheduling

Two ways of choosing the months an invocation works on:

* **offset-driven** (prices): months ``[offset, offset + batch)`` of the target
  range, regardless of what is stored; the caller passes back
  ``nextOffsetMonths``.  See ``months.batch_window``.
* **gap-driven** (weather / demand / generation): read the ascending
  timestamps of rows that still have a gap, and take the first ``batch``
  distinct months.  Finished months are never fetched again, and completion
  is a fresh count of remaining gaps rather than offset arithmetic.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from backfill.months import MonthWindow, first_months, year_bounds
from backfill.store import TrainingDataStore

# Hourly rows in the longest UTC month; scanning batch × this many gap rows
# is enough to see ``batch`` distinct months when they exist.
MAX_HOURS_PER_MONTH = 31 * 24


async def gap_months(
    store: TrainingDataStore,
    gap_columns: Sequence[str],
    start_year: int,
    end_year: int,
    batch_months: int,
) -> list[MonthWindow]:
    """First ``batch_months`` months (ascending) with rows missing ``gap_columns``."""
    if batch_months <= 0:
        return []
    start, end = year_bounds(start_year, end_year)
    timestamps = await store.missing_timestamps(
        gap_columns, start, end, limit=batch_months * MAX_HOURS_PER_MONTH
    )
    months = first_months(timestamps, batch_months)
    logger.debug(
        "Gap scan {} | {} rows → months {}",
        ",".join(gap_columns), len(timestamps), [m.label for m in months],
    )
    return months


async def remaining_gaps(
    store: TrainingDataStore,
    gap_columns: Sequence[str],
    start_year: int,
    end_year: int,
) -> int:
    """Rows in the target range still missing ``gap_columns``."""
    start, end = year_bounds(start_year, end_year)
    return await store.count_missing(gap_columns, start, end)
