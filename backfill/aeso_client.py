"""
AESO Backfill — AESO API Client
Async wrapper around the AESO public reporting API (api.aeso.ca/report/v1.1).

Endpoints used
--------------
  Pool price      : GET /price/poolPrice?startDate=&endDate=
                    → return["Pool Price Report"][]  {begin_datetime_utc, pool_price}
  Internal load   : GET /load/albertaInternalLoad?startDate=&endDate=
                    → return["Alberta Internal Load"][]  {begin_datetime_utc, alberta_internal_load}
  Supply/demand   : GET /csd/summary/current
                    → return.generation_data_list[]  {fuel_type, aggregated_net_generation}

Dates are market-local calendar days (YYYY-MM-DD); both day bounds are inclusive.

The same key is sent as ``X-API-Key`` and ``Ocp-Apim-Subscription-Key`` since
AESO has used both header names across gateway versions.

Only the internal-load call retries: the AIL gateway sees intermittent
DNS/connect failures, so each attempt gets its own timeout and a linearly
increasing pause before the next one.
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Optional

import httpx
from loguru import logger

from backfill.config import Settings
from backfill.errors import MissingCredentialError, UpstreamError

POOL_PRICE_PATH    = "/price/poolPrice"
INTERNAL_LOAD_PATH = "/load/albertaInternalLoad"
CSD_SUMMARY_PATH   = "/csd/summary/current"

POOL_PRICE_REPORT    = "Pool Price Report"
INTERNAL_LOAD_REPORT = "Alberta Internal Load"


def _fmt_date(day: date) -> str:
    return day.strftime("%Y-%m-%d")


class AESOClient:
    """
    Thin async client for the AESO reporting API.

    Parameters
    ----------
    http:
        Shared ``httpx.AsyncClient`` (owned by the caller).
    settings:
        Supplies the base URL, API key, timeouts and retry policy.
    """

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http
        self._settings = settings

    @property
    def configured(self) -> bool:
        return self._settings.aeso_configured

    def _headers(self) -> dict[str, str]:
        key = self._settings.aeso_api_key
        if not key:
            raise MissingCredentialError("AESO API key not configured")
        return {"X-API-Key": key, "Ocp-Apim-Subscription-Key": key}

    async def _get(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Single authenticated GET.  Returns the parsed JSON body.

        Raises ``httpx.HTTPStatusError`` / ``httpx.TransportError`` untouched so
        callers can decide whether to retry; malformed JSON becomes
        ``UpstreamError``.
        """
        url = f"{self._settings.aeso_base_url}{path}"
        resp = await self._http.get(
            url,
            params=params,
            headers=self._headers(),
            timeout=timeout if timeout is not None else self._settings.request_timeout,
        )
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError("AESO", f"malformed JSON from {path}: {exc}") from exc

    async def _get_once(self, path: str, params: Optional[dict[str, Any]], label: str) -> Any:
        try:
            return await self._get(path, params)
        except httpx.HTTPStatusError as exc:
            raise UpstreamError("AESO", f"{label}: {exc.response.status_code}",
                                exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("AESO", f"{label}: {exc!r}") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def pool_price(self, start: date, end: date) -> list[dict]:
        """Hourly pool price points for ``start``..``end`` inclusive."""
        params = {"startDate": _fmt_date(start), "endDate": _fmt_date(end)}
        logger.info("AESO: pool price {} → {}", params["startDate"], params["endDate"])
        body = await self._get_once(POOL_PRICE_PATH, params, f"pool price {params['startDate']}")
        return _report_items(body, POOL_PRICE_REPORT)

    async def internal_load(self, start: date, end: date) -> list[dict]:
        """
        Hourly Alberta Internal Load for ``start``..``end`` inclusive.

        Retries transport failures, timeouts and 5xx responses up to
        ``demand_max_attempts`` times; 4xx responses fail immediately.
        """
        params = {"startDate": _fmt_date(start), "endDate": _fmt_date(end)}
        label = f"internal load {params['startDate']}"
        attempts = max(1, self._settings.demand_max_attempts)
        last_exc = UpstreamError("AESO", f"{label}: no attempts made")

        for attempt in range(1, attempts + 1):
            try:
                logger.debug("AESO: {} attempt={}/{}", label, attempt, attempts)
                body = await self._get(INTERNAL_LOAD_PATH, params,
                                       timeout=self._settings.demand_timeout)
                return _report_items(body, INTERNAL_LOAD_REPORT)
            except httpx.TimeoutException as exc:
                logger.warning("AESO: {} timed out (attempt {}): {!r}", label, attempt, exc)
                last_exc = UpstreamError("AESO", f"{label}: timed out after {attempt} attempts")
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if 400 <= status < 500:
                    logger.error("AESO: {} client error {}", label, status)
                    raise UpstreamError("AESO", f"{label}: {status}", status) from exc
                logger.warning("AESO: {} server error {} (attempt {})", label, status, attempt)
                last_exc = UpstreamError("AESO", f"{label}: {status}", status)
            except httpx.TransportError as exc:
                logger.warning("AESO: {} connection error (attempt {}): {!r}", label, attempt, exc)
                last_exc = UpstreamError("AESO", f"{label}: connection failed after {attempt} attempts")

            if attempt < attempts:
                wait = self._settings.demand_retry_backoff * attempt
                logger.info("AESO: retrying {} in {:.1f}s…", label, wait)
                await asyncio.sleep(wait)

        raise last_exc

    async def csd_summary(self) -> dict:
        """Current supply/demand summary (a live snapshot, not history)."""
        logger.info("AESO: current supply/demand snapshot")
        body = await self._get_once(CSD_SUMMARY_PATH, None, "csd summary")
        summary = body.get("return", body) if isinstance(body, dict) else None
        if not isinstance(summary, dict):
            raise UpstreamError("AESO", "csd summary: unexpected body shape")
        return summary


def _report_items(body: Any, report: str) -> list[dict]:
    """Extract ``return[report]`` from an AESO report body."""
    if not isinstance(body, dict):
        raise UpstreamError("AESO", f"{report}: unexpected body shape")
    section = body.get("return") or {}
    if not isinstance(section, dict):
        raise UpstreamError("AESO", f"{report}: unexpected body shape")
    items = section.get(report) or []
    if not isinstance(items, list):
        raise UpstreamError("AESO", f"{report}: expected a list")
    return items
