"""
AESO Backfill — Coverage status

Read-only summary of what the training table holds: row count, per-group
coverage percentages, the stored date range, and the target range the
backfill is working towards.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from backfill.config import Settings
from backfill.months import hours_between
from backfill.store import (
    DEMAND_GAP_COLUMNS,
    GENERATION_GAP_COLUMNS,
    WEATHER_GAP_COLUMNS,
    TrainingDataStore,
)


@dataclass
class StatusReport:
    total_records:            int
    coverage_weather:         int
    coverage_demand:          int
    coverage_generation:      int
    range_start:              Optional[datetime]
    range_end:                Optional[datetime]
    target_start:             date
    target_end:               date
    estimated_records_needed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success":      True,
            "totalRecords": self.total_records,
            "coverage": {
                "weather":    self.coverage_weather,
                "demand":     self.coverage_demand,
                "generation": self.coverage_generation,
            },
            "dateRange": {
                "start": self.range_start.isoformat() if self.range_start else None,
                "end":   self.range_end.isoformat() if self.range_end else None,
            },
            "targetRange": {
                "start": self.target_start.isoformat(),
                "end":   self.target_end.isoformat(),
            },
            "estimatedRecordsNeeded": self.estimated_records_needed,
        }


def _pct(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


async def get_data_status(
    store: TrainingDataStore,
    settings: Settings,
    today: Optional[date] = None,
) -> StatusReport:
    """Aggregate counts and coverage for the training table."""
    today = today or datetime.now(tz=timezone.utc).date()
    target_start = date.fromisoformat(settings.target_start_date)

    total      = await store.count_records()
    weather    = await store.count_complete(WEATHER_GAP_COLUMNS)
    demand     = await store.count_complete(DEMAND_GAP_COLUMNS)
    generation = await store.count_complete(GENERATION_GAP_COLUMNS)
    low, high  = await store.timestamp_bounds()

    return StatusReport(
        total_records=total,
        coverage_weather=_pct(weather, total),
        coverage_demand=_pct(demand, total),
        coverage_generation=_pct(generation, total),
        range_start=low,
        range_end=high,
        target_start=target_start,
        target_end=today,
        estimated_records_needed=hours_between(target_start, today),
    )
