"""
AESO Backfill — Pool Price phase

The only routine that creates rows.  Walks the target range month by month
from the caller's offset, skipping months that already hold enough rows, and
upserts one row per hourly pool-price point together with its calendar
fields.

Completion is offset arithmetic: done once ``nextOffsetMonths`` reaches the
number of months in the target range.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from backfill.aeso_client import AESOClient
from backfill.config import Settings
from backfill.errors import UpstreamError
from backfill.months import batch_window, calendar_fields, to_utc_hour, total_months, year_bounds
from backfill.results import PhaseResult, credential_missing
from backfill.store import TrainingDataStore


def parse_price_points(items: list[dict]) -> list[dict]:
    """
    Turn raw pool-price report items into upsert rows.

    Points without a timestamp or with a non-numeric price are dropped; when
    the same hour appears twice the later point wins.
    """
    rows: dict = {}
    for item in items:
        ts = to_utc_hour(item.get("begin_datetime_utc"))
        try:
            price = float(item.get("pool_price"))
        except (TypeError, ValueError):
            continue
        if ts is None or price != price:  # NaN
            continue
        rows[ts] = {"timestamp": ts, "pool_price": price, **calendar_fields(ts)}
    return [rows[ts] for ts in sorted(rows)]


async def backfill_prices(
    store: TrainingDataStore,
    aeso: AESOClient,
    settings: Settings,
    start_year: int,
    end_year: int,
    batch_months: int,
    offset_months: int,
) -> PhaseResult:
    """Fetch and upsert pool prices for one batch of months."""
    if not aeso.configured:
        logger.warning("Prices: AESO API key not configured — nothing to do.")
        return credential_missing("prices", offset_months, inserts=True)

    months, next_offset = batch_window(start_year, end_year, batch_months, offset_months)
    low, high = year_bounds(start_year, end_year)
    result = PhaseResult(phase="prices", records_inserted=0, months_skipped=0,
                         next_offset_months=next_offset)

    for month in months:
        existing = await store.count_records(month.start, month.end)
        if existing >= settings.price_skip_threshold:
            logger.info("Prices {} | skipping — {} rows already stored", month.label, existing)
            result.months_skipped += 1
            continue

        logger.info("Prices {} | fetching {} → {}", month.label, month.first_day, month.last_day)
        try:
            items = await aeso.pool_price(month.first_day, month.last_day)
        except UpstreamError as exc:
            logger.error("Prices {} | {}", month.label, exc)
            result.errors.append(f"Prices {month.first_day} to {month.last_day}: {exc}")
            continue

        # Local-day requests overrun the UTC year at the end of December
        rows = [r for r in parse_price_points(items) if low <= r["timestamp"] < high]
        result.months_processed += 1
        if not rows:
            logger.info("Prices {} | no price data returned", month.label)
        else:
            written = await store.upsert_prices(rows)
            result.records_inserted += written
            logger.info("Prices {} | upserted {} rows", month.label, written)

        await asyncio.sleep(settings.price_month_delay)

    result.is_complete = next_offset >= total_months(start_year, end_year)
    return result
