"""
AESO Backfill — Weather phase

Gap-driven: only months containing rows without Calgary temperature or wind
speed are fetched.  Two Open-Meteo archive series (Calgary, Edmonton) are
merged into one hourly lookup keyed by UTC hour, and each gap row is patched
from the matching hour.

Derived fields
--------------
  wind_speed / cloud_cover : two-city mean (Calgary alone if Edmonton is missing)
  solar_irradiance         : 1000 W/m² × sin((h − 7) / 14 · π) × (1 − 0.75 · cloud/100)
                             for market-local hour h in 7–21, else 0
  heating / cooling DD     : distance of the two-city mean temperature from 18 °C
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Any, Optional

import pandas as pd
from loguru import logger

from backfill.config import Settings
from backfill.errors import UpstreamError
from backfill.months import market_local
from backfill.open_meteo import CALGARY, EDMONTON, OpenMeteoClient
from backfill.results import PhaseResult
from backfill.scheduler import gap_months, remaining_gaps
from backfill.store import WEATHER_GAP_COLUMNS, TrainingDataStore

MAX_IRRADIANCE  = 1000.0
SUNRISE_HOUR    = 7
DAYLIGHT_HOURS  = 14
DEGREE_DAY_BASE = 18.0


def solar_irradiance(cloud_cover: float, local_hour: int) -> float:
    """Clear-sky sine profile over the day, damped by cloud cover."""
    time_factor = 0.0
    if SUNRISE_HOUR <= local_hour <= SUNRISE_HOUR + DAYLIGHT_HOURS:
        time_factor = math.sin((local_hour - SUNRISE_HOUR) / DAYLIGHT_HOURS * math.pi)
    cloud_factor = 1 - (cloud_cover / 100) * 0.75
    return round(MAX_IRRADIANCE * time_factor * cloud_factor, 2)


def degree_days(avg_temp: float) -> tuple[float, float]:
    """(heating, cooling) degree-days against an 18 °C base."""
    heating = DEGREE_DAY_BASE - avg_temp if avg_temp < DEGREE_DAY_BASE else 0.0
    cooling = avg_temp - DEGREE_DAY_BASE if avg_temp > DEGREE_DAY_BASE else 0.0
    return round(heating, 2), round(cooling, 2)


def _value(v: Any) -> Optional[float]:
    return None if v is None or pd.isna(v) else float(v)


def build_weather_lookup(calgary: pd.DataFrame, edmonton: pd.DataFrame) -> dict[datetime, dict]:
    """
    Merge the two city series into ``{utc_hour: {temp_calgary, …}}``.

    Hours where Calgary temperature or wind is missing are left out, so those
    rows stay in the gap set for a later run.
    """
    merged = calgary.join(edmonton, how="left", lsuffix="_cgy", rsuffix="_edm")
    lookup: dict[datetime, dict] = {}
    for hour, row in merged.iterrows():
        temp_cgy = _value(row["temperature_cgy"])
        wind_cgy = _value(row["wind_speed_cgy"])
        if temp_cgy is None or wind_cgy is None:
            continue
        temp_edm  = _value(row["temperature_edm"])
        wind_edm  = _value(row["wind_speed_edm"])
        cloud_cgy = _value(row["cloud_cover_cgy"])
        cloud_edm = _value(row["cloud_cover_edm"])

        if cloud_cgy is None:
            cloud = cloud_edm
        else:
            cloud = (cloud_cgy + (cloud_edm if cloud_edm is not None else cloud_cgy)) / 2

        lookup[hour.to_pydatetime()] = {
            "temp_calgary":  temp_cgy,
            "temp_edmonton": temp_edm if temp_edm is not None else temp_cgy,
            "wind_speed":    (wind_cgy + (wind_edm if wind_edm is not None else wind_cgy)) / 2,
            "cloud_cover":   cloud,
        }
    return lookup


def weather_update(ts: datetime, weather: dict) -> dict[str, Any]:
    """Column values for one row from its matched weather hour."""
    avg_temp = (weather["temp_calgary"] + weather["temp_edmonton"]) / 2
    heating, cooling = degree_days(avg_temp)
    cloud = weather["cloud_cover"]
    return {
        "temperature_calgary":  weather["temp_calgary"],
        "temperature_edmonton": weather["temp_edmonton"],
        "wind_speed":           round(weather["wind_speed"], 2),
        "cloud_cover":          round(cloud, 2) if cloud is not None else None,
        "solar_irradiance":     solar_irradiance(cloud if cloud is not None else 0.0,
                                                 market_local(ts).hour),
        "heating_degree_days":  heating,
        "cooling_degree_days":  cooling,
    }


async def backfill_weather(
    store: TrainingDataStore,
    meteo: OpenMeteoClient,
    settings: Settings,
    start_year: int,
    end_year: int,
    batch_months: int,
    offset_months: int,
) -> PhaseResult:
    """Fill weather columns for up to ``batch_months`` months that have gaps."""
    result = PhaseResult(phase="weather", records_updated=0, unmatched_records=0)
    months = await gap_months(store, WEATHER_GAP_COLUMNS, start_year, end_year, batch_months)

    if not months:
        logger.info("Weather | no rows missing weather in {}–{}", start_year, end_year)

    for month in months:
        logger.info("Weather {} | fetching {} → {}", month.label, month.first_day, month.last_day)
        try:
            calgary  = await meteo.hourly(CALGARY, month.first_day, month.last_day)
            edmonton = await meteo.hourly(EDMONTON, month.first_day, month.last_day)
        except UpstreamError as exc:
            logger.error("Weather {} | {}", month.label, exc)
            result.errors.append(f"Weather {month.first_day} to {month.last_day}: {exc}")
            continue

        lookup = build_weather_lookup(calgary, edmonton)
        targets = await store.missing_timestamps(
            WEATHER_GAP_COLUMNS, month.start, month.end, limit=settings.weather_rows_per_month
        )

        updates = []
        unmatched = 0
        for ts in targets:
            weather = lookup.get(ts)
            if weather is None:
                unmatched += 1
                continue
            updates.append((ts, weather_update(ts, weather)))

        updated = await store.update_missing_many(
            updates, WEATHER_GAP_COLUMNS, settings.update_chunk_size
        )
        result.records_updated += updated
        result.unmatched_records += unmatched
        result.months_processed += 1
        logger.info(
            "Weather {} | updated {} of {} rows ({} without a matching hour)",
            month.label, updated, len(targets), unmatched,
        )

        await asyncio.sleep(settings.weather_month_delay)

    remaining = await remaining_gaps(store, WEATHER_GAP_COLUMNS, start_year, end_year)
    result.remaining_records = remaining
    result.is_complete = remaining == 0
    result.next_offset_months = offset_months + result.months_processed
    return result
