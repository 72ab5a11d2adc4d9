"""Tests for the SQLAlchemy training-data store on a temporary SQLite file."""
from __future__ import annotations

import asyncio
import tempfile
import unittest
from datetime import datetime, timezone

from backfill.store import (
    DEMAND_GAP_COLUMNS,
    WEATHER_GAP_COLUMNS,
    TrainingDataStore,
)

from _support import hours, seed_prices, sqlite_url

UTC = timezone.utc
JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)


class TestTrainingDataStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def _run(self, scenario):
        async def wrapper():
            store = TrainingDataStore.from_url(sqlite_url(self.tmp.name))
            await store.create_schema()
            try:
                return await scenario(store)
            finally:
                await store.dispose()
        return asyncio.run(wrapper())

    def test_empty_store(self):
        async def scenario(store):
            return await store.count_records(), await store.timestamp_bounds()

        count, bounds = self._run(scenario)
        self.assertEqual(count, 0)
        self.assertEqual(bounds, (None, None))

    def test_price_upsert_is_idempotent(self):
        async def scenario(store):
            stamps = hours(JAN_1, 24)
            await seed_prices(store, stamps, price=40.0)
            await seed_prices(store, stamps, price=55.5)
            return await store.count_records(), await store.fetch_records()

        count, rows = self._run(scenario)
        self.assertEqual(count, 24)
        self.assertTrue(all(r["pool_price"] == 55.5 for r in rows))
        self.assertEqual(rows[0]["timestamp"], JAN_1)

    def test_price_upsert_keeps_other_column_groups(self):
        async def scenario(store):
            await seed_prices(store, [JAN_1])
            await store.update_missing(JAN_1, {"ail_mw": 9100.0}, DEMAND_GAP_COLUMNS)
            await seed_prices(store, [JAN_1], price=70.0)
            return await store.fetch_records()

        (row,) = self._run(scenario)
        self.assertEqual(row["pool_price"], 70.0)
        self.assertEqual(row["ail_mw"], 9100.0)

    def test_guarded_update_only_fills_gaps(self):
        async def scenario(store):
            await seed_prices(store, [JAN_1])
            first = await store.update_missing(JAN_1, {"ail_mw": 9000.0}, DEMAND_GAP_COLUMNS)
            second = await store.update_missing(JAN_1, {"ail_mw": 1.0}, DEMAND_GAP_COLUMNS)
            absent = await store.update_missing(
                datetime(2030, 1, 1, tzinfo=UTC), {"ail_mw": 1.0}, DEMAND_GAP_COLUMNS
            )
            return first, second, absent, await store.fetch_records()

        first, second, absent, rows = self._run(scenario)
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertFalse(absent)
        self.assertEqual(rows[0]["ail_mw"], 9000.0)

    def test_concurrent_duplicate_updates_apply_once(self):
        async def scenario(store):
            await seed_prices(store, hours(JAN_1, 10))
            updates = [(ts, {"ail_mw": 9000.0}) for ts in hours(JAN_1, 10)]
            return await store.update_missing_many(updates + updates, DEMAND_GAP_COLUMNS, chunk_size=4)

        self.assertEqual(self._run(scenario), 10)

    def test_failed_update_lets_the_rest_of_the_chunk_finish(self):
        stamps = hours(JAN_1, 10)

        async def scenario(store):
            await seed_prices(store, stamps)
            apply = store.update_missing

            async def fail_first(ts, values, gap_columns):
                if ts == stamps[0]:
                    raise RuntimeError("connection reset")
                return await apply(ts, values, gap_columns)

            store.update_missing = fail_first
            updates = [(ts, {"ail_mw": 9000.0}) for ts in stamps]
            try:
                await store.update_missing_many(updates, DEMAND_GAP_COLUMNS, chunk_size=10)
            except RuntimeError as exc:
                error = exc
            else:
                error = None
            rows = await store.fetch_records()
            return error, [r["ail_mw"] for r in rows]

        error, demand = self._run(scenario)
        self.assertIsInstance(error, RuntimeError)
        self.assertEqual(str(error), "connection reset")
        self.assertIsNone(demand[0])
        self.assertEqual(demand[1:], [9000.0] * 9)

    def test_missing_timestamps_ascending_and_limited(self):
        async def scenario(store):
            stamps = hours(JAN_1, 6)
            await seed_prices(store, list(reversed(stamps)))
            await store.update_missing(
                stamps[0], {"temperature_calgary": 1.0, "wind_speed": 2.0}, WEATHER_GAP_COLUMNS
            )
            listed = await store.missing_timestamps(WEATHER_GAP_COLUMNS, limit=3)
            return stamps, listed, await store.count_missing(WEATHER_GAP_COLUMNS)

        stamps, listed, missing = self._run(scenario)
        self.assertEqual(listed, stamps[1:4])
        self.assertEqual(missing, 5)

    def test_partial_weather_row_still_counts_as_gap(self):
        async def scenario(store):
            await seed_prices(store, [JAN_1])
            await store.update_missing(JAN_1, {"temperature_calgary": 1.0}, WEATHER_GAP_COLUMNS)
            return (
                await store.count_missing(WEATHER_GAP_COLUMNS),
                await store.count_complete(WEATHER_GAP_COLUMNS),
            )

        self.assertEqual(self._run(scenario), (1, 0))

    def test_range_filters_are_half_open(self):
        async def scenario(store):
            await seed_prices(store, hours(JAN_1, 48))
            return await store.count_records(JAN_1, datetime(2024, 1, 2, tzinfo=UTC))

        self.assertEqual(self._run(scenario), 24)


if __name__ == "__main__":
    unittest.main()
