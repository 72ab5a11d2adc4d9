"""
AESO Backfill — FastAPI Service
HTTP entry point for the historical training-data backfill.

One POST per batch: the caller names a phase and a month offset, the service
processes a bounded number of months and returns progress counters.  Callers
(a scheduler, the batch runner, or a dashboard "continue" button) re-invoke
with ``nextOffsetMonths`` until ``isComplete`` is true.

Run:  uvicorn api:app --reload --port 8000
Docs: http://localhost:8000/docs
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Union

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from backfill.config import configure_logging, get_settings
from backfill.dispatcher import PHASES, BackfillContext, BackfillParams, run_phase
from backfill.errors import UnknownPhaseError
from backfill.results import AllPhasesResult, PhaseResult
from backfill.status import StatusReport

load_dotenv()
configure_logging(os.getenv("LOG_LEVEL", "INFO"))

# Sent on every response, including errors, so browser callers can read them
CORS_HEADERS = {
    "Access-Control-Allow-Origin":  "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}
PREFLIGHT_HEADERS = {"Access-Control-Allow-Methods": "POST, GET, OPTIONS"}

DEFAULT_START_YEAR = 2018

# ---------------------------------------------------------------------------
# Application state: one shared context per process
# ---------------------------------------------------------------------------

_context: Optional[BackfillContext] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared httpx client and store for the lifetime of the process."""
    global _context
    if _context is not None:
        # Context supplied by the embedding process; it owns the lifecycle
        yield
        return

    settings = get_settings()
    http = httpx.AsyncClient(timeout=settings.request_timeout)
    _context = BackfillContext.from_settings(settings, http)
    await _context.store.create_schema()
    logger.info("Backfill service ready (AESO key configured: {}).", settings.aeso_configured)
    try:
        yield
    finally:
        await http.aclose()
        await _context.store.dispose()
        _context = None
        logger.info("Backfill service stopped.")


def get_context() -> BackfillContext:
    if _context is None:
        raise RuntimeError("Backfill context not initialised")
    return _context


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AESO Backfill API",
    description=(
        "Batch backfill of hourly AESO pool price, weather, demand and "
        "generation data into the training table."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class BackfillRequest(BaseModel):
    """POST body.  Every field is optional; an empty body asks for status."""

    model_config = ConfigDict(populate_by_name=True)

    phase:         str = Field(default="status", description=f"One of {', '.join(PHASES)}.")
    start_year:    int = Field(default=DEFAULT_START_YEAR, alias="startYear")
    end_year:      int = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc).year,
        alias="endYear",
    )
    batch_months:  int = Field(default=3, alias="batchMonths", ge=1)
    offset_months: int = Field(default=0, alias="offsetMonths", ge=0)

    @model_validator(mode="after")
    def _check_years(self) -> BackfillRequest:
        if self.start_year > self.end_year:
            raise ValueError("'startYear' must not be later than 'endYear'.")
        return self

    def to_params(self) -> BackfillParams:
        return BackfillParams(
            phase=self.phase,
            start_year=self.start_year,
            end_year=self.end_year,
            batch_months=self.batch_months,
            offset_months=self.offset_months,
        )


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhaseResponse(CamelModel):
    """One data phase.  Counters a phase does not report are left out."""

    success:            bool
    phase:              str
    records_inserted:   Optional[int] = None
    records_updated:    Optional[int] = None
    months_processed:   int
    months_skipped:     Optional[int] = None
    next_offset_months: int
    is_complete:        bool
    remaining_records:  Optional[int] = None
    unmatched_records:  Optional[int] = None
    error:              Optional[str] = None
    errors:             Optional[list[str]] = None


class CoverageModel(CamelModel):
    weather:    int
    demand:     int
    generation: int


class RangeModel(CamelModel):
    start: Optional[str]
    end:   Optional[str]


class StatusResponse(CamelModel):
    success:                  bool
    total_records:            int
    coverage:                 CoverageModel
    date_range:               RangeModel
    target_range:             RangeModel
    estimated_records_needed: int


class AllPhasesResponse(CamelModel):
    success:            bool
    phase:              str
    prices:             PhaseResponse
    weather:            PhaseResponse
    demand:             PhaseResponse
    generation:         PhaseResponse
    next_offset_months: int
    is_complete:        bool


class HealthResponse(BaseModel):
    status:              str
    timestamp:           str
    aeso_key_configured: bool


def _phase_response(r: PhaseResult) -> PhaseResponse:
    optional = {
        "records_inserted":  r.records_inserted,
        "records_updated":   r.records_updated,
        "months_skipped":    r.months_skipped,
        "remaining_records": r.remaining_records,
        "unmatched_records": r.unmatched_records,
        "error":             r.error,
        "errors":            list(r.errors) or None,
    }
    # Only explicitly set fields are serialised, so skipped counters stay absent
    return PhaseResponse(
        success            = r.success,
        phase              = r.phase,
        months_processed   = r.months_processed,
        next_offset_months = r.next_offset_months,
        is_complete        = r.is_complete,
        **{k: v for k, v in optional.items() if v is not None},
    )


def _status_response(r: StatusReport) -> StatusResponse:
    return StatusResponse(
        success       = True,
        total_records = r.total_records,
        coverage      = CoverageModel(
            weather    = r.coverage_weather,
            demand     = r.coverage_demand,
            generation = r.coverage_generation,
        ),
        date_range    = RangeModel(
            start = r.range_start.isoformat() if r.range_start else None,
            end   = r.range_end.isoformat() if r.range_end else None,
        ),
        target_range  = RangeModel(
            start = r.target_start.isoformat(),
            end   = r.target_end.isoformat(),
        ),
        estimated_records_needed = r.estimated_records_needed,
    )


def _all_response(r: AllPhasesResult) -> AllPhasesResponse:
    return AllPhasesResponse(
        success            = True,
        phase              = "all",
        prices             = _phase_response(r.prices),
        weather            = _phase_response(r.weather),
        demand             = _phase_response(r.demand),
        generation         = _phase_response(r.generation),
        next_offset_months = r.next_offset_months,
        is_complete        = r.is_complete,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def _json(payload: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers=CORS_HEADERS)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    """Invalid bodies get the same ``{success, error}`` envelope as other failures."""
    messages = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{where}: {err['msg']}" if where else err["msg"])
    logger.warning("{} {} rejected: {}", request.method, request.url.path, messages)
    return _json({"success": False, "error": "; ".join(messages)}, status_code=422)


@app.get("/health", response_model=HealthResponse, tags=["Meta"])
async def health(response: Response, ctx: BackfillContext = Depends(get_context)):
    """Service liveness plus whether the AESO key is present."""
    response.headers.update(CORS_HEADERS)
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        aeso_key_configured=ctx.settings.aeso_configured,
    )


@app.options("/backfill", include_in_schema=False)
async def backfill_preflight():
    return Response(status_code=200, headers={**CORS_HEADERS, **PREFLIGHT_HEADERS})


@app.post(
    "/backfill",
    response_model=Union[AllPhasesResponse, StatusResponse, PhaseResponse],
    response_model_exclude_unset=True,
    tags=["Backfill"],
)
async def run_backfill(
    response: Response,
    body: Optional[BackfillRequest] = None,
    ctx: BackfillContext = Depends(get_context),
):
    """
    Process one batch of the requested phase.

    - **status**: coverage report (read-only)
    - **prices**: offset-driven pool price upsert
    - **weather / demand / generation**: gap-driven updates
    - **all**: the four data phases in sequence

    Credential problems are reported inside a 200 payload
    (``success: false``); only unexpected failures return 500.
    """
    params = (body or BackfillRequest()).to_params()

    try:
        result = await run_phase(ctx, params)
    except UnknownPhaseError as exc:
        logger.warning("POST /backfill rejected: {}", exc)
        return _json({"success": False, "error": str(exc)}, status_code=400)
    except Exception as exc:
        logger.exception("Backfill failed: {}", exc)
        return _json({"success": False, "error": str(exc)}, status_code=500)

    response.headers.update(CORS_HEADERS)
    if isinstance(result, StatusReport):
        return _status_response(result)
    if isinstance(result, AllPhasesResult):
        return _all_response(result)
    return _phase_response(result)


if __name__ == "__main__":
    uvicorn.run("api:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
