"""Result objects returned by the backfill routines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class PhaseResult:
    """Outcome of one routine for one invocation."""

    phase:              str
    success:            bool = True
    records_inserted:   Optional[int] = None   # prices only
    records_updated:    Optional[int] = None   # weather / demand / generation
    months_processed:   int = 0
    months_skipped:     Optional[int] = None
    next_offset_months: int = 0
    is_complete:        bool = False
    remaining_records:  Optional[int] = None
    unmatched_records:  Optional[int] = None
    error:              Optional[str] = None
    errors:             list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON shape of the result; unset counters and empty error lists are omitted."""
        out: dict[str, Any] = {
            "success":          self.success,
            "phase":            self.phase,
            "recordsInserted":  self.records_inserted,
            "recordsUpdated":   self.records_updated,
            "monthsProcessed":  self.months_processed,
            "monthsSkipped":    self.months_skipped,
            "nextOffsetMonths": self.next_offset_months,
            "isComplete":       self.is_complete,
            "remainingRecords": self.remaining_records,
            "unmatchedRecords": self.unmatched_records,
            "error":            self.error,
            "errors":           list(self.errors) or None,
        }
        return {k: v for k, v in out.items() if v is not None}


def credential_missing(phase: str, offset_months: int, *, inserts: bool = False) -> PhaseResult:
    """Result for a routine that cannot run without an API key."""
    result = PhaseResult(
        phase=phase,
        success=False,
        next_offset_months=offset_months,
        is_complete=True,
        error="AESO API key not configured",
    )
    if inserts:
        result.records_inserted = 0
    else:
        result.records_updated = 0
    return result


@dataclass
class AllPhasesResult:
    """The four data phases run back to back for one batch."""

    prices:     PhaseResult
    weather:    PhaseResult
    demand:     PhaseResult
    generation: PhaseResult

    @property
    def phases(self) -> tuple[PhaseResult, ...]:
        return (self.prices, self.weather, self.demand, self.generation)

    @property
    def next_offset_months(self) -> int:
        # Prices is the only offset-driven phase
        return self.prices.next_offset_months

    @property
    def is_complete(self) -> bool:
        return all(r.is_complete for r in self.phases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success":          True,
            "phase":            "all",
            "prices":           self.prices.to_dict(),
            "weather":          self.weather.to_dict(),
            "demand":           self.demand.to_dict(),
            "generation":       self.generation.to_dict(),
            "nextOffsetMonths": self.next_offset_months,
            "isComplete":       self.is_complete,
        }
