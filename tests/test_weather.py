"""Tests for the gap-driven weather routine and its derived fields."""
from __future__ import annotations

import asyncio
import tempfile
import unittest
from datetime import datetime, timezone

import httpx

from backfill.store import WEATHER_GAP_COLUMNS
from backfill.weather import backfill_weather, degree_days, solar_irradiance

from _support import ARCHIVE, FakeUpstream, hours, make_settings, meteo_archive, open_context, seed_prices

UTC = timezone.utc
JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)


class TestDerivedFields(unittest.TestCase):

    def test_solar_is_zero_outside_daylight(self):
        self.assertEqual(solar_irradiance(0.0, 3), 0.0)
        self.assertEqual(solar_irradiance(0.0, 22), 0.0)

    def test_solar_peaks_mid_window_and_is_damped_by_cloud(self):
        self.assertEqual(solar_irradiance(0.0, 14), 1000.0)
        self.assertEqual(solar_irradiance(100.0, 14), 250.0)

    def test_degree_days(self):
        self.assertEqual(degree_days(-7.5), (25.5, 0.0))
        self.assertEqual(degree_days(20.0), (0.0, 2.0))
        self.assertEqual(degree_days(18.0), (0.0, 0.0))


class TestBackfillWeather(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.upstream = FakeUpstream()
        self.settings = make_settings()

    def tearDown(self):
        self.tmp.cleanup()

    def _run(self, scenario):
        async def wrapper():
            async with open_context(self.tmp.name, self.upstream, self.settings) as ctx:
                return await scenario(ctx)
        return asyncio.run(wrapper())

    @staticmethod
    def _weather(ctx, batch_months=3):
        return backfill_weather(ctx.store, ctx.meteo, ctx.settings, 2024, 2024, batch_months, 0)

    def test_nothing_missing_is_a_no_op(self):
        async def scenario(ctx):
            stamps = hours(JAN_1, 3)
            await seed_prices(ctx.store, stamps)
            filled = {"temperature_calgary": -3.0, "wind_speed": 10.0}
            await ctx.store.update_missing_many([(ts, filled) for ts in stamps], WEATHER_GAP_COLUMNS)
            return (await self._weather(ctx)).to_dict()

        payload = self._run(scenario)
        self.assertEqual(payload["recordsUpdated"], 0)
        self.assertTrue(payload["isComplete"])
        self.assertEqual(payload["remainingRecords"], 0)
        self.assertEqual(self.upstream.requests, [])

    def test_gap_rows_are_filled_from_both_cities(self):
        self.upstream.route(ARCHIVE, meteo_archive())

        async def scenario(ctx):
            await seed_prices(ctx.store, hours(JAN_1, 48))
            result = await self._weather(ctx)
            return result, await ctx.store.fetch_records()

        result, rows = self._run(scenario)
        self.assertEqual(result.records_updated, 48)
        self.assertEqual(result.unmatched_records, 0)
        self.assertEqual(result.remaining_records, 0)
        self.assertTrue(result.is_complete)
        self.assertEqual(result.next_offset_months, 1)

        row = rows[0]
        self.assertEqual(row["temperature_calgary"], -5.0)
        self.assertEqual(row["temperature_edmonton"], -10.0)
        self.assertEqual(row["wind_speed"], 12.0)
        self.assertEqual(row["cloud_cover"], 40.0)
        self.assertEqual(row["heating_degree_days"], 25.5)
        self.assertEqual(row["cooling_degree_days"], 0.0)
        self.assertIsNotNone(row["solar_irradiance"])

        archive_calls = self.upstream.calls(ARCHIVE)
        self.assertEqual(len(archive_calls), 2)
        for request in archive_calls:
            self.assertEqual(request.url.params["timezone"], "GMT")
            self.assertEqual(request.url.params["start_date"], "2024-01-01")
            self.assertEqual(request.url.params["end_date"], "2024-01-31")

    def test_unmatched_hours_are_counted_and_coverage_never_drops(self):
        self.upstream.route(ARCHIVE, meteo_archive(keep=lambda ts: ts.day == 1))

        async def scenario(ctx):
            await seed_prices(ctx.store, hours(JAN_1, 48))
            before = await ctx.store.count_complete(WEATHER_GAP_COLUMNS)
            first = await self._weather(ctx)
            middle = await ctx.store.count_complete(WEATHER_GAP_COLUMNS)
            second = await self._weather(ctx)
            after = await ctx.store.count_complete(WEATHER_GAP_COLUMNS)
            return (before, middle, after), first, second

        coverage, first, second = self._run(scenario)
        self.assertEqual(coverage, (0, 24, 24))
        self.assertEqual(first.records_updated, 24)
        self.assertEqual(first.unmatched_records, 24)
        self.assertEqual(first.remaining_records, 24)
        self.assertFalse(first.is_complete)
        self.assertEqual(second.records_updated, 0)
        self.assertEqual(second.unmatched_records, 24)

    def test_rows_per_month_cap_leaves_the_rest_for_later(self):
        self.settings = make_settings(weather_rows_per_month=10)
        self.upstream.route(ARCHIVE, meteo_archive())

        async def scenario(ctx):
            await seed_prices(ctx.store, hours(JAN_1, 48))
            first = await self._weather(ctx)
            filled = await ctx.store.count_complete(WEATHER_GAP_COLUMNS)
            return first, filled

        first, filled = self._run(scenario)
        self.assertEqual(first.records_updated, 10)
        self.assertEqual(filled, 10)
        self.assertEqual(first.unmatched_records, 0)
        self.assertEqual(first.remaining_records, 38)
        self.assertFalse(first.is_complete)

        # Earliest hours are patched first
        async def next_gap(ctx):
            return await ctx.store.missing_timestamps(WEATHER_GAP_COLUMNS, limit=1)

        self.assertEqual(self._run(next_gap), [datetime(2024, 1, 1, 10, tzinfo=UTC)])

    def test_only_gap_months_are_fetched(self):
        self.upstream.route(ARCHIVE, meteo_archive())

        async def scenario(ctx):
            await seed_prices(ctx.store, hours(datetime(2024, 3, 10, tzinfo=UTC), 2))
            await seed_prices(ctx.store, hours(datetime(2024, 7, 4, tzinfo=UTC), 2))
            return await self._weather(ctx, batch_months=12)

        result = self._run(scenario)
        starts = sorted({r.url.params["start_date"] for r in self.upstream.calls(ARCHIVE)})
        self.assertEqual(starts, ["2024-03-01", "2024-07-01"])
        self.assertEqual(result.months_processed, 2)
        self.assertEqual(result.records_updated, 4)

    def test_archive_failure_is_recorded(self):
        self.upstream.route(ARCHIVE, lambda request: httpx.Response(429, json={"reason": "rate"}))

        async def scenario(ctx):
            await seed_prices(ctx.store, hours(JAN_1, 2))
            return await self._weather(ctx)

        result = self._run(scenario)
        self.assertEqual(result.records_updated, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Open-Meteo error for Calgary 2024-01-01", result.errors[0])
        self.assertFalse(result.is_complete)


if __name__ == "__main__":
    unittest.main()
