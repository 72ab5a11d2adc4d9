"""
AESO Backfill — Demand (Alberta Internal Load) phase

Gap-driven over ``ail_mw``.  AESO reports are requested by market-local
calendar day, so the request for a UTC month starts one day early to cover
the month's first UTC hours (still the previous local day).

Both the AESO ``begin_datetime_utc`` strings and the stored timestamps are
normalised to the canonical UTC hour before matching.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from loguru import logger

from backfill.aeso_client import AESOClient
from backfill.config import Settings
from backfill.errors import UpstreamError
from backfill.months import to_utc_hour
from backfill.results import PhaseResult, credential_missing
from backfill.scheduler import gap_months, remaining_gaps
from backfill.store import DEMAND_GAP_COLUMNS, TrainingDataStore


def build_load_lookup(items: list[dict]) -> dict[datetime, float]:
    """``{utc_hour: alberta_internal_load}``; unusable points are dropped."""
    lookup: dict[datetime, float] = {}
    for item in items:
        ts = to_utc_hour(item.get("begin_datetime_utc"))
        try:
            load = float(item.get("alberta_internal_load"))
        except (TypeError, ValueError):
            continue
        if ts is None or load != load:
            continue
        lookup[ts] = load
    return lookup


async def backfill_demand(
    store: TrainingDataStore,
    aeso: AESOClient,
    settings: Settings,
    start_year: int,
    end_year: int,
    batch_months: int,
    offset_months: int,
) -> PhaseResult:
    """Fill ``ail_mw`` for up to ``batch_months`` months that have gaps."""
    if not aeso.configured:
        logger.warning("Demand: AESO API key not configured — nothing to do.")
        return credential_missing("demand", offset_months)

    result = PhaseResult(phase="demand", records_updated=0, unmatched_records=0)
    months = await gap_months(store, DEMAND_GAP_COLUMNS, start_year, end_year, batch_months)

    if not months:
        logger.info("Demand | no rows missing demand in {}–{}", start_year, end_year)

    for month in months:
        request_start = month.first_day - timedelta(days=1)
        logger.info("Demand {} | fetching {} → {}", month.label, request_start, month.last_day)
        try:
            items = await aeso.internal_load(request_start, month.last_day)
        except UpstreamError as exc:
            logger.error("Demand {} | giving up: {}", month.label, exc)
            result.errors.append(f"Demand {month.first_day} to {month.last_day}: {exc}")
            continue

        lookup = build_load_lookup(items)
        targets = await store.missing_timestamps(DEMAND_GAP_COLUMNS, month.start, month.end)

        updates = []
        unmatched = 0
        for ts in targets:
            load = lookup.get(ts)
            if load is None:
                unmatched += 1
                continue
            updates.append((ts, {"ail_mw": load}))

        updated = await store.update_missing_many(
            updates, DEMAND_GAP_COLUMNS, settings.update_chunk_size
        )
        result.records_updated += updated
        result.unmatched_records += unmatched
        result.months_processed += 1
        logger.info(
            "Demand {} | updated {} of {} rows ({} without a matching hour)",
            month.label, updated, len(targets), unmatched,
        )

        await asyncio.sleep(settings.demand_month_delay)

    remaining = await remaining_gaps(store, DEMAND_GAP_COLUMNS, start_year, end_year)
    result.remaining_records = remaining
    result.is_complete = remaining == 0
    result.next_offset_months = offset_months + result.months_processed
    return result
