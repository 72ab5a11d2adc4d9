"""Run the backfill from the command line, batch after batch.

Usage:
    python -m backfill.runner --phase prices --start-year 2018 --end-year 2024
    python -m backfill.runner --phase weather --batch-months 6 --max-batches 20
    python -m backfill.runner --phase status

Each batch is one ``dispatch`` call, exactly what one POST /backfill does.
The loop stops when the phase reports ``isComplete``, when ``--max-batches``
is reached, or when a batch writes nothing and does not advance the offset.
The exit code is 1 when the last batch reported errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from dotenv import load_dotenv
from loguru import logger

from backfill.config import Settings, configure_logging, get_settings
from backfill.dispatcher import PHASES, BackfillContext, BackfillParams, dispatch

SUB_PHASES = ("prices", "weather", "demand", "generation")


def _parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Per-routine results inside a payload (one, or four for ``all``)."""
    nested = [payload[k] for k in SUB_PHASES if isinstance(payload.get(k), dict)]
    return nested or [payload]


def made_progress(payload: dict[str, Any], offset: int) -> bool:
    """True when the batch wrote rows or moved the price offset forward."""
    parts = _parts(payload)
    written = sum(p.get("recordsInserted", 0) + p.get("recordsUpdated", 0) for p in parts)
    advanced = any(
        p.get("phase") == "prices" and p.get("nextOffsetMonths", offset) > offset for p in parts
    )
    return written > 0 or advanced


def has_errors(payload: dict[str, Any]) -> bool:
    return any(p.get("errors") or p.get("success") is False for p in _parts(payload))


async def run_batches(
    ctx: BackfillContext,
    params: BackfillParams,
    max_batches: int,
) -> list[dict[str, Any]]:
    """Dispatch batches until complete, stalled, or ``max_batches`` is hit."""
    payloads: list[dict[str, Any]] = []
    offset = params.offset_months

    for batch_no in range(1, max(1, max_batches) + 1):
        payload = await dispatch(ctx, replace(params, offset_months=offset))
        payloads.append(payload)
        if params.phase == "status":
            break

        logger.info(
            "Batch {} | phase={} | offset {} → {} | complete={}",
            batch_no, params.phase, offset,
            payload.get("nextOffsetMonths"), payload.get("isComplete"),
        )
        if payload.get("isComplete"):
            break
        if not made_progress(payload, offset):
            logger.warning("Batch {} made no progress; stopping.", batch_no)
            break
        offset = payload.get("nextOffsetMonths", offset)
    else:
        logger.info("Stopped after {} batches (--max-batches).", max_batches)

    return payloads


async def _run(settings: Settings, params: BackfillParams, max_batches: int) -> list[dict[str, Any]]:
    async with httpx.AsyncClient(timeout=settings.request_timeout) as http:
        ctx = BackfillContext.from_settings(settings, http)
        await ctx.store.create_schema()
        try:
            return await run_batches(ctx, params, max_batches)
        finally:
            await ctx.store.dispose()


def build_parser() -> argparse.ArgumentParser:
    this_year = datetime.now(tz=timezone.utc).year
    parser = argparse.ArgumentParser(description="Backfill the AESO training-data table")
    parser.add_argument("--phase", choices=PHASES, default="status", help="Phase to run (default: status)")
    parser.add_argument("--start-year", type=int, default=2018, help="First year of the range (default: 2018)")
    parser.add_argument("--end-year", type=int, default=this_year, help=f"Last year of the range (default: {this_year})")
    parser.add_argument("--batch-months", type=int, default=3, help="Months per batch, at least 1 (default: 3)")
    parser.add_argument("--offset-months", type=int, default=0, help="Starting month offset (default: 0)")
    parser.add_argument("--max-batches", type=int, default=100, help="Upper bound on batches (default: 100)")
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.start_year > args.end_year:
        parser.error("--start-year must not be later than --end-year")
    if args.batch_months < 1:
        parser.error("--batch-months must be at least 1")
    if args.offset_months < 0:
        parser.error("--offset-months must not be negative")

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    params = BackfillParams(
        phase=args.phase,
        start_year=args.start_year,
        end_year=args.end_year,
        batch_months=args.batch_months,
        offset_months=args.offset_months,
    )
    payloads = asyncio.run(_run(settings, params, args.max_batches))

    last = payloads[-1] if payloads else {}
    print(json.dumps(last, indent=2))
    return 1 if has_errors(last) else 0


if __name__ == "__main__":
    sys.exit(main())
