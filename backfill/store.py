"""
AESO Backfill — Training-data store

SQLAlchemy (async) persistence for the hourly ``aeso_training_data`` table.

Timestamps are stored as naive UTC so SQLite and PostgreSQL compare them the
same way; everything crossing the store boundary is an aware UTC datetime.

Write rules
-----------
* Prices are the only inserts: ``upsert_prices`` is keyed on ``timestamp`` and
  on conflict rewrites price-owned columns only.
* Weather / demand / generation use ``update_missing_many``: a conditional
  ``UPDATE … WHERE timestamp = :ts AND <gap condition>`` so a row that was
  already filled (e.g. by an overlapping invocation) is left untouched.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from loguru import logger
from sqlalchemy import Boolean, DateTime, Float, Integer, and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

UPSERT_BATCH_SIZE = 100


class Base(DeclarativeBase):
    """Base class for ORM models."""


class TrainingRecord(Base):
    """One hour of market, weather and generation data."""

    __tablename__ = "aeso_training_data"

    id:        Mapped[int]      = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, unique=True, nullable=False)

    pool_price: Mapped[Optional[float]] = mapped_column(Float)
    ail_mw:     Mapped[Optional[float]] = mapped_column(Float)

    temperature_calgary:  Mapped[Optional[float]] = mapped_column(Float)
    temperature_edmonton: Mapped[Optional[float]] = mapped_column(Float)
    wind_speed:           Mapped[Optional[float]] = mapped_column(Float)
    cloud_cover:          Mapped[Optional[float]] = mapped_column(Float)
    solar_irradiance:     Mapped[Optional[float]] = mapped_column(Float)
    heating_degree_days:  Mapped[Optional[float]] = mapped_column(Float)
    cooling_degree_days:  Mapped[Optional[float]] = mapped_column(Float)

    generation_gas:   Mapped[Optional[float]] = mapped_column(Float)
    generation_wind:  Mapped[Optional[float]] = mapped_column(Float)
    generation_solar: Mapped[Optional[float]] = mapped_column(Float)
    generation_hydro: Mapped[Optional[float]] = mapped_column(Float)
    generation_coal:  Mapped[Optional[float]] = mapped_column(Float)
    generation_other: Mapped[Optional[float]] = mapped_column(Float)

    hour_of_day: Mapped[Optional[int]]  = mapped_column(Integer)
    day_of_week: Mapped[Optional[int]]  = mapped_column(Integer)
    month:       Mapped[Optional[int]]  = mapped_column(Integer)
    is_weekend:  Mapped[Optional[bool]] = mapped_column(Boolean)


# ---------------------------------------------------------------------------
# Column ownership  (each routine writes only its own group)
# ---------------------------------------------------------------------------

PRICE_COLUMNS = ("pool_price", "hour_of_day", "day_of_week", "month", "is_weekend")

WEATHER_COLUMNS = (
    "temperature_calgary",
    "temperature_edmonton",
    "wind_speed",
    "cloud_cover",
    "solar_irradiance",
    "heating_degree_days",
    "cooling_degree_days",
)

DEMAND_COLUMNS = ("ail_mw",)

GENERATION_COLUMNS = (
    "generation_gas",
    "generation_wind",
    "generation_solar",
    "generation_hydro",
    "generation_coal",
    "generation_other",
)

# A row "needs" a group when any of these columns is null
WEATHER_GAP_COLUMNS    = ("temperature_calgary", "wind_speed")
DEMAND_GAP_COLUMNS     = ("ail_mw",)
GENERATION_GAP_COLUMNS = ("generation_gas",)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_db(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    return ts.replace(tzinfo=timezone.utc)


def _columns(names: Iterable[str]) -> list:
    return [getattr(TrainingRecord, name) for name in names]


def _any_null(names: Sequence[str]):
    return or_(*(col.is_(None) for col in _columns(names)))


def _all_set(names: Sequence[str]):
    return and_(*(col.is_not(None) for col in _columns(names)))


def _in_range(start: Optional[datetime], end: Optional[datetime]) -> list:
    clauses = []
    if start is not None:
        clauses.append(TrainingRecord.timestamp >= _to_db(start))
    if end is not None:
        clauses.append(TrainingRecord.timestamp < _to_db(end))
    return clauses


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TrainingDataStore:
    """
    Async access to ``aeso_training_data``.

    Parameters
    ----------
    engine:
        SQLAlchemy ``AsyncEngine`` (``sqlite+aiosqlite`` or ``postgresql+asyncpg``).
    max_writers:
        Upper bound on concurrent write statements.  SQLite only supports a
        single writer, so it is always capped at 1 there.
    """

    def __init__(self, engine: AsyncEngine, max_writers: int = 50) -> None:
        self._engine = engine
        if engine.dialect.name == "sqlite":
            max_writers = 1
        self._write_slots = asyncio.Semaphore(max(1, max_writers))

    @classmethod
    def from_url(cls, url: str, max_writers: int = 50) -> TrainingDataStore:
        engine = create_async_engine(url, pool_pre_ping=True)
        logger.info("Training-data store bound to {}", engine.url.render_as_string(hide_password=True))
        return cls(engine, max_writers=max_writers)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _scalar(self, stmt) -> Any:
        async with self._engine.connect() as conn:
            return (await conn.execute(stmt)).scalar()

    async def count_records(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Rows with ``start <= timestamp < end`` (either bound optional)."""
        stmt = select(func.count()).select_from(TrainingRecord).where(*_in_range(start, end))
        return int(await self._scalar(stmt) or 0)

    async def count_complete(self, columns: Sequence[str]) -> int:
        """Rows where every column in ``columns`` is populated."""
        stmt = select(func.count()).select_from(TrainingRecord).where(_all_set(columns))
        return int(await self._scalar(stmt) or 0)

    async def count_missing(
        self,
        columns: Sequence[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Rows where any column in ``columns`` is null."""
        stmt = (
            select(func.count())
            .select_from(TrainingRecord)
            .where(_any_null(columns), *_in_range(start, end))
        )
        return int(await self._scalar(stmt) or 0)

    async def timestamp_bounds(self) -> tuple[Optional[datetime], Optional[datetime]]:
        """Earliest and latest stored timestamps, ``(None, None)`` when empty."""
        stmt = select(func.min(TrainingRecord.timestamp), func.max(TrainingRecord.timestamp))
        async with self._engine.connect() as conn:
            low, high = (await conn.execute(stmt)).one()
        return _from_db(low), _from_db(high)

    async def missing_timestamps(
        self,
        columns: Sequence[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[datetime]:
        """Ascending timestamps of rows where any of ``columns`` is null."""
        stmt = (
            select(TrainingRecord.timestamp)
            .where(_any_null(columns), *_in_range(start, end))
            .order_by(TrainingRecord.timestamp)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(stmt)).scalars().all()
        return [_from_db(ts) for ts in rows]

    async def fetch_records(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """Full rows in the range, ordered by timestamp."""
        stmt = (
            select(TrainingRecord.__table__)
            .where(*_in_range(start, end))
            .order_by(TrainingRecord.timestamp)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        records = []
        for row in rows:
            record = dict(row)
            record["timestamp"] = _from_db(record["timestamp"])
            records.append(record)
        return records

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert(self):
        if self._engine.dialect.name == "postgresql":
            return postgresql.insert(TrainingRecord)
        return sqlite.insert(TrainingRecord)

    async def upsert_prices(self, rows: list[dict[str, Any]]) -> int:
        """
        Insert-or-update price rows keyed on ``timestamp``.

        Each row carries ``timestamp`` plus price-owned columns.  Existing
        rows keep their weather / demand / generation values.
        """
        if not rows:
            return 0

        payload = [
            {"timestamp": _to_db(row["timestamp"]), **{c: row.get(c) for c in PRICE_COLUMNS}}
            for row in rows
        ]

        written = 0
        async with self._write_slots:
            async with self._engine.begin() as conn:
                for i in range(0, len(payload), UPSERT_BATCH_SIZE):
                    batch = payload[i : i + UPSERT_BATCH_SIZE]
                    stmt = self._insert().values(batch)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[TrainingRecord.timestamp],
                        set_={c: stmt.excluded[c] for c in PRICE_COLUMNS},
                    )
                    await conn.execute(stmt)
                    written += len(batch)
        return written

    async def update_missing(
        self,
        timestamp: datetime,
        values: dict[str, Any],
        gap_columns: Sequence[str],
    ) -> bool:
        """
        Patch one row if it still has a gap in ``gap_columns``.

        Returns ``True`` when a row was changed; ``False`` when no row exists
        for the timestamp or the gap was already filled.
        """
        stmt = (
            update(TrainingRecord)
            .where(TrainingRecord.timestamp == _to_db(timestamp), _any_null(gap_columns))
            .values(**values)
        )
        async with self._write_slots:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                changed = result.rowcount == 1
        return changed

    async def update_missing_many(
        self,
        updates: list[tuple[datetime, dict[str, Any]]],
        gap_columns: Sequence[str],
        chunk_size: int = 50,
    ) -> int:
        """
        Apply ``update_missing`` to many rows, ``chunk_size`` at a time.

        Each chunk is issued concurrently and awaited before the next one
        starts, bounding outstanding requests against the database.  A chunk
        always runs to completion; the first failure in it is raised after.
        """
        updated = 0
        chunk_size = max(1, chunk_size)
        for i in range(0, len(updates), chunk_size):
            chunk = updates[i : i + chunk_size]
            results = await asyncio.gather(
                *(self.update_missing(ts, values, gap_columns) for ts, values in chunk),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            if failures:
                raise failures[0]
            updated += sum(1 for changed in results if changed is True)
        return updated
