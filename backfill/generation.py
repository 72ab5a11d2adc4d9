"""
AESO Backfill — Generation phase

AESO only publishes generation by fuel type as a *current* supply/demand
snapshot, not hourly history.  This phase takes that snapshot as a baseline
and shapes it per target hour with simple factors:

  solar            : baseline × sin((h − 7) / 12 · π) for local hour 7–19, else 0
  gas, coal, other : baseline × 1.08 on peak hours (07–22 local), × 0.92 off peak
  hydro            : baseline (run-of-river, flat)
  wind             : baseline × jitter in [0.85, 1.15), seeded by the timestamp

The result is a placeholder estimate, not a historical reconstruction.
Seeding the jitter by timestamp keeps re-runs of the same hour identical.
"""

from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from backfill.aeso_client import AESOClient
from backfill.config import Settings
from backfill.errors import UpstreamError
from backfill.months import market_local
from backfill.results import PhaseResult, credential_missing
from backfill.scheduler import gap_months, remaining_gaps
from backfill.store import GENERATION_GAP_COLUMNS, TrainingDataStore

PEAK_HOURS        = range(7, 23)
PEAK_FACTOR       = 1.08
OFF_PEAK_FACTOR   = 0.92
SOLAR_FIRST_HOUR  = 7
SOLAR_LAST_HOUR   = 19
WIND_JITTER_LOW   = 0.85
WIND_JITTER_RANGE = 0.30


@dataclass(frozen=True)
class FuelMix:
    """Net generation (MW) by fuel type."""

    gas:   float = 0.0
    wind:  float = 0.0
    solar: float = 0.0
    hydro: float = 0.0
    coal:  float = 0.0
    other: float = 0.0

    @property
    def total(self) -> float:
        return self.gas + self.wind + self.solar + self.hydro + self.coal + self.other


def _fuel_bucket(fuel_type: str) -> str:
    fuel = fuel_type.lower()
    if "gas" in fuel:
        return "gas"
    if "coal" in fuel or "dual" in fuel:
        return "coal"
    if "hydro" in fuel:
        return "hydro"
    if "wind" in fuel:
        return "wind"
    if "solar" in fuel:
        return "solar"
    return "other"


def parse_fuel_mix(summary: dict) -> FuelMix:
    """Aggregate the CSD ``generation_data_list`` into a ``FuelMix``."""
    entries = summary.get("generation_data_list") or summary.get("generationDataList") or []
    totals = {"gas": 0.0, "wind": 0.0, "solar": 0.0, "hydro": 0.0, "coal": 0.0, "other": 0.0}
    for entry in entries if isinstance(entries, list) else []:
        fuel = entry.get("fuel_type") or entry.get("fuelType") or ""
        raw = entry.get("aggregated_net_generation", entry.get("total_net_generation"))
        try:
            mw = float(raw)
        except (TypeError, ValueError):
            continue
        totals[_fuel_bucket(fuel)] += mw
    return FuelMix(**totals)


def estimate_generation(baseline: FuelMix, ts: datetime) -> dict[str, Any]:
    """Shape the snapshot baseline into generation columns for hour ``ts``."""
    hour = market_local(ts).hour
    load_factor = PEAK_FACTOR if hour in PEAK_HOURS else OFF_PEAK_FACTOR

    solar_factor = 0.0
    if SOLAR_FIRST_HOUR <= hour <= SOLAR_LAST_HOUR:
        span = SOLAR_LAST_HOUR - SOLAR_FIRST_HOUR
        solar_factor = math.sin((hour - SOLAR_FIRST_HOUR) / span * math.pi)

    rng = random.Random(int(ts.timestamp()))
    wind_factor = WIND_JITTER_LOW + rng.random() * WIND_JITTER_RANGE

    return {
        "generation_gas":   round(baseline.gas * load_factor, 1),
        "generation_wind":  round(baseline.wind * wind_factor, 1),
        "generation_solar": round(baseline.solar * solar_factor, 1),
        "generation_hydro": round(baseline.hydro, 1),
        "generation_coal":  round(baseline.coal * load_factor, 1),
        "generation_other": round(baseline.other * load_factor, 1),
    }


async def backfill_generation(
    store: TrainingDataStore,
    aeso: AESOClient,
    settings: Settings,
    start_year: int,
    end_year: int,
    batch_months: int,
    offset_months: int,
) -> PhaseResult:
    """Estimate generation columns for up to ``batch_months`` months that have gaps."""
    if not aeso.configured:
        logger.warning("Generation: AESO API key not configured — nothing to do.")
        return credential_missing("generation", offset_months)

    result = PhaseResult(phase="generation", records_updated=0)
    months = await gap_months(store, GENERATION_GAP_COLUMNS, start_year, end_year, batch_months)
    baseline: Optional[FuelMix] = None

    if not months:
        logger.info("Generation | no rows missing generation in {}–{}", start_year, end_year)

    for month in months:
        if baseline is None:
            try:
                baseline = parse_fuel_mix(await aeso.csd_summary())
            except UpstreamError as exc:
                logger.error("Generation {} | {}", month.label, exc)
                result.errors.append(f"Generation {month.first_day} to {month.last_day}: {exc}")
                continue
            logger.info("Generation | snapshot baseline {:.0f} MW total", baseline.total)

        targets = await store.missing_timestamps(GENERATION_GAP_COLUMNS, month.start, month.end)
        updates = [(ts, estimate_generation(baseline, ts)) for ts in targets]
        updated = await store.update_missing_many(
            updates, GENERATION_GAP_COLUMNS, settings.update_chunk_size
        )
        result.records_updated += updated
        result.months_processed += 1
        logger.info("Generation {} | estimated {} of {} rows", month.label, updated, len(targets))

        await asyncio.sleep(settings.generation_month_delay)

    remaining = await remaining_gaps(store, GENERATION_GAP_COLUMNS, start_year, end_year)
    result.remaining_records = remaining
    result.is_complete = remaining == 0
    result.next_offset_months = offset_months + result.months_processed
    return result
