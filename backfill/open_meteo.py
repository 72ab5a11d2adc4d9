"""
AESO Backfill — Open-Meteo Archive Client
Hourly historical weather for a point, from the free Open-Meteo archive API
(no key required).

  GET {archive}?latitude=&longitude=&start_date=&end_date=
                &hourly=temperature_2m,windspeed_10m,cloudcover&timezone=GMT

Requesting GMT keeps the returned ``hourly.time`` strings in UTC, so each
hour maps directly onto a stored UTC timestamp with no local-time guessing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

import httpx
import pandas as pd
from loguru import logger

from backfill.config import Settings
from backfill.errors import UpstreamError

HOURLY_FIELDS = ("temperature_2m", "windspeed_10m", "cloudcover")


@dataclass(frozen=True)
class City:
    """A weather reference point."""

    key:  str
    name: str
    lat:  float
    lon:  float


CALGARY  = City("calgary",  "Calgary",  51.0447, -114.0719)
EDMONTON = City("edmonton", "Edmonton", 53.5461, -113.4938)


class OpenMeteoClient:
    """Fetches archived hourly weather as a UTC-indexed DataFrame."""

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http
        self._settings = settings

    async def hourly(self, city: City, start: date, end: date) -> pd.DataFrame:
        """
        Hourly observations for ``start``..``end`` inclusive.

        Returns
        -------
        pandas.DataFrame
            Index: ``hour`` (tz-aware UTC).
            Columns: temperature, wind_speed, cloud_cover (NaN where missing).
        """
        params = {
            "latitude":   city.lat,
            "longitude":  city.lon,
            "start_date": start.isoformat(),
            "end_date":   end.isoformat(),
            "hourly":     ",".join(HOURLY_FIELDS),
            "timezone":   "GMT",
        }
        label = f"Open-Meteo error for {city.name} {start.isoformat()}"
        logger.info("Open-Meteo: {} {} → {}", city.name, start, end)

        try:
            resp = await self._http.get(
                self._settings.open_meteo_archive_url,
                params=params,
                timeout=self._settings.request_timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError("Open-Meteo", f"{label}: {exc.response.status_code}",
                                exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("Open-Meteo", f"{label}: {exc!r}") from exc
        except ValueError as exc:
            raise UpstreamError("Open-Meteo", f"{label}: malformed JSON ({exc})") from exc

        return _parse_hourly(body, label)


def _parse_hourly(body: object, label: str) -> pd.DataFrame:
    hourly = body.get("hourly") if isinstance(body, dict) else None
    if not isinstance(hourly, dict) or "time" not in hourly:
        raise UpstreamError("Open-Meteo", f"{label}: response has no hourly block")

    times = hourly["time"]
    columns = {}
    for src, dst in zip(HOURLY_FIELDS, ("temperature", "wind_speed", "cloud_cover")):
        values = hourly.get(src)
        if values is None or len(values) != len(times):
            values = [None] * len(times)
        columns[dst] = pd.to_numeric(pd.Series(values, dtype="object"), errors="coerce")

    df = pd.DataFrame(columns)
    df["hour"] = pd.to_datetime(pd.Series(times), utc=True, errors="coerce").dt.floor("h")
    df = df.dropna(subset=["hour"]).drop_duplicates(subset=["hour"]).set_index("hour")
    logger.debug("Open-Meteo: parsed {} hourly rows.", len(df))
    return df
