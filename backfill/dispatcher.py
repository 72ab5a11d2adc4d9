"""
AESO Backfill — Phase dispatcher

Maps a request's ``phase`` to the routine(s) that serve it.  ``all`` runs the
four data phases one after another (never concurrently) for the same batch
parameters and folds their results into one payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

import httpx
from loguru import logger

from backfill.aeso_client import AESOClient
from backfill.config import Settings
from backfill.demand import backfill_demand
from backfill.errors import UnknownPhaseError
from backfill.generation import backfill_generation
from backfill.open_meteo import OpenMeteoClient
from backfill.prices import backfill_prices
from backfill.results import AllPhasesResult, PhaseResult
from backfill.status import StatusReport, get_data_status
from backfill.store import TrainingDataStore
from backfill.weather import backfill_weather

PHASES = ("status", "prices", "weather", "demand", "generation", "all")


@dataclass
class BackfillContext:
    """Collaborators shared by every phase of one service instance."""

    store:    TrainingDataStore
    aeso:     AESOClient
    meteo:    OpenMeteoClient
    settings: Settings

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient) -> BackfillContext:
        """Wire the store and upstream clients from ``settings``."""
        store = TrainingDataStore.from_url(settings.database_url, max_writers=settings.update_chunk_size)
        return cls(
            store=store,
            aeso=AESOClient(http, settings),
            meteo=OpenMeteoClient(http, settings),
            settings=settings,
        )


@dataclass(frozen=True)
class BackfillParams:
    phase:         str
    start_year:    int
    end_year:      int
    batch_months:  int = 3
    offset_months: int = 0


PhaseOutcome = Union[StatusReport, PhaseResult, AllPhasesResult]


async def run_phase(ctx: BackfillContext, params: BackfillParams) -> PhaseOutcome:
    """Run the requested phase and return its result object."""
    logger.info(
        "Backfill | phase={} | years={}–{} | batch={} | offset={}",
        params.phase, params.start_year, params.end_year,
        params.batch_months, params.offset_months,
    )

    if params.phase == "status":
        return await get_data_status(ctx.store, ctx.settings)

    args = (params.start_year, params.end_year, params.batch_months, params.offset_months)

    if params.phase == "prices":
        return await backfill_prices(ctx.store, ctx.aeso, ctx.settings, *args)
    if params.phase == "weather":
        return await backfill_weather(ctx.store, ctx.meteo, ctx.settings, *args)
    if params.phase == "demand":
        return await backfill_demand(ctx.store, ctx.aeso, ctx.settings, *args)
    if params.phase == "generation":
        return await backfill_generation(ctx.store, ctx.aeso, ctx.settings, *args)

    if params.phase == "all":
        prices     = await backfill_prices(ctx.store, ctx.aeso, ctx.settings, *args)
        weather    = await backfill_weather(ctx.store, ctx.meteo, ctx.settings, *args)
        demand     = await backfill_demand(ctx.store, ctx.aeso, ctx.settings, *args)
        generation = await backfill_generation(ctx.store, ctx.aeso, ctx.settings, *args)
        return AllPhasesResult(prices=prices, weather=weather, demand=demand, generation=generation)

    raise UnknownPhaseError(params.phase)


async def dispatch(ctx: BackfillContext, params: BackfillParams) -> dict[str, Any]:
    """Run the requested phase and return its JSON payload."""
    return (await run_phase(ctx, params)).to_dict()
