"""Tests for the FastAPI /backfill and /health endpoints."""
from __future__ import annotations

import contextlib
import json
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

import api
from backfill.aeso_client import AESOClient

from _support import (
    POOL_PRICE,
    FakeUpstream,
    aeso_report,
    build_context,
    hours,
    make_settings,
    price_items,
)

UTC = timezone.utc
ALLOWED_HEADERS = "authorization, x-client-info, apikey, content-type"


class TestBackfillAPI(unittest.TestCase):
    """Each test gets its own SQLite file and fake upstream behind the app."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.upstream = FakeUpstream()
        self.ctx, self.http = build_context(self.tmp.name, self.upstream, make_settings())

        self._original_context = api._context
        api._context = self.ctx
        api.app.dependency_overrides[api.get_context] = lambda: self.ctx

        self._stack = contextlib.ExitStack()
        self.client = self._stack.enter_context(TestClient(api.app))
        self.client.portal.call(self.ctx.store.create_schema)

    def tearDown(self):
        self.client.portal.call(self.ctx.store.dispose)
        self.client.portal.call(self.http.aclose)
        self._stack.close()
        api.app.dependency_overrides.clear()
        api._context = self._original_context
        self.tmp.cleanup()

    def assertCors(self, resp):
        self.assertEqual(resp.headers["access-control-allow-origin"], "*")
        self.assertEqual(resp.headers["access-control-allow-headers"], ALLOWED_HEADERS)

    def test_status_on_empty_store(self):
        resp = self.client.post("/backfill", json={"phase": "status"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["totalRecords"], 0)
        self.assertEqual(data["coverage"], {"weather": 0, "demand": 0, "generation": 0})
        self.assertEqual(data["dateRange"], {"start": None, "end": None})
        self.assertCors(resp)

    def test_empty_body_means_status(self):
        resp = self.client.post("/backfill")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("totalRecords", resp.json())

    def test_prices_january_2024(self):
        jan = hours(datetime(2024, 1, 1, tzinfo=UTC), 720)
        self.upstream.route(POOL_PRICE, aeso_report("Pool Price Report", price_items(jan)))

        resp = self.client.post("/backfill", json={
            "phase": "prices", "startYear": 2024, "endYear": 2024,
            "batchMonths": 1, "offsetMonths": 0,
        })
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["recordsInserted"], 720)
        self.assertEqual(data["nextOffsetMonths"], 1)
        self.assertFalse(data["isComplete"])

        status = self.client.post("/backfill", json={"phase": "status"}).json()
        self.assertEqual(status["totalRecords"], 720)

    def test_all_runs_each_phase(self):
        self.upstream.route(POOL_PRICE, aeso_report("Pool Price Report", []))

        resp = self.client.post("/backfill", json={
            "phase": "all", "startYear": 2024, "endYear": 2024, "batchMonths": 2,
        })
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["phase"], "all")
        for phase in ("prices", "weather", "demand", "generation"):
            self.assertEqual(data[phase]["phase"], phase)
        self.assertEqual(data["nextOffsetMonths"], 2)
        self.assertFalse(data["isComplete"])
        self.assertTrue(data["weather"]["isComplete"])

    def test_unknown_phase_is_rejected(self):
        resp = self.client.post("/backfill", json={"phase": "bogus"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"success": False, "error": "Unknown phase: bogus"})
        self.assertCors(resp)

    def test_invalid_parameters_are_rejected(self):
        for body in (
            {"phase": "prices", "startYear": 2025, "endYear": 2024},
            {"phase": "prices", "batchMonths": 0},
            {"phase": "prices", "offsetMonths": -1},
            {"phase": "prices", "batchMonths": "lots"},
        ):
            with self.subTest(body=body):
                resp = self.client.post("/backfill", json=body)
                self.assertEqual(resp.status_code, 422)
                data = resp.json()
                self.assertEqual(set(data), {"success", "error"})
                self.assertFalse(data["success"])
                self.assertIsInstance(data["error"], str)
                self.assertCors(resp)

    def test_validation_error_names_the_field(self):
        resp = self.client.post("/backfill", json={"phase": "prices", "offsetMonths": -1})
        self.assertIn("offsetMonths", resp.json()["error"])

        resp = self.client.post("/backfill", json={"phase": "prices", "startYear": 2025, "endYear": 2024})
        self.assertIn("'startYear' must not be later than 'endYear'", resp.json()["error"])

    def test_batch_larger_than_range_is_accepted(self):
        self.upstream.route(POOL_PRICE, aeso_report("Pool Price Report", []))

        resp = self.client.post("/backfill", json={
            "phase": "prices", "startYear": 2024, "endYear": 2024, "batchMonths": 36,
        })
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["nextOffsetMonths"], 12)
        self.assertTrue(data["isComplete"])
        self.assertEqual(len(self.upstream.calls(POOL_PRICE)), 12)

    def test_phase_payload_omits_unreported_counters(self):
        self.upstream.route(POOL_PRICE, aeso_report("Pool Price Report", []))

        data = self.client.post("/backfill", json={
            "phase": "prices", "startYear": 2024, "endYear": 2024, "batchMonths": 1,
        }).json()
        self.assertEqual(data["recordsInserted"], 0)
        self.assertEqual(data["monthsSkipped"], 0)
        for key in ("recordsUpdated", "remainingRecords", "unmatchedRecords", "error", "errors"):
            self.assertNotIn(key, data)

    def test_openapi_declares_response_models(self):
        schema = self.client.get("/openapi.json").json()
        ok = json.dumps(schema["paths"]["/backfill"]["post"]["responses"]["200"])
        for name in ("PhaseResponse", "StatusResponse", "AllPhasesResponse"):
            self.assertIn(f"#/components/schemas/{name}", ok)

        phase_fields = schema["components"]["schemas"]["PhaseResponse"]["properties"]
        self.assertIn("recordsInserted", phase_fields)
        self.assertIn("nextOffsetMonths", phase_fields)
        status_fields = schema["components"]["schemas"]["StatusResponse"]["properties"]
        self.assertIn("dateRange", status_fields)


    def test_unexpected_failure_returns_500(self):
        with patch("api.run_phase", AsyncMock(side_effect=RuntimeError("database unavailable"))):
            resp = self.client.post("/backfill", json={"phase": "prices"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"success": False, "error": "database unavailable"})
        self.assertCors(resp)

    def test_options_preflight(self):
        resp = self.client.options("/backfill")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"")
        self.assertCors(resp)

    def test_browser_preflight_gets_empty_body(self):
        resp = self.client.options("/backfill", headers={
            "Origin": "https://dashboard.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type, apikey",
        })
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"")
        self.assertCors(resp)
        self.assertIn("POST", resp.headers["access-control-allow-methods"])


    def test_missing_key_is_reported_in_a_200(self):
        settings = make_settings(aeso_api_key=None)
        self.ctx.settings = settings
        self.ctx.aeso = AESOClient(self.http, settings)

        resp = self.client.post("/backfill", json={"phase": "demand", "offsetMonths": 5})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertFalse(data["success"])
        self.assertTrue(data["isComplete"])
        self.assertEqual(data["nextOffsetMonths"], 5)

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["status"], "ok")
        self.assertTrue(data["aeso_key_configured"])


if __name__ == "__main__":
    unittest.main()
