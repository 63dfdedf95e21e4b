"""Integration-style tests for the FastAPI layer using fakes."""
from __future__ import annotations

import functools
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

import retooth.api as api_module
from fakes import FakeClock, FakeTransport
from retooth.reconnect import Reconnector
from retooth.store import MemoryTimestampStore

ADDRESS = "AA:BB:CC:DD:EE:FF"


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        api_module._rec = None
        api_module._store = None
        api_module._log_path = None
        self._tmp = tempfile.TemporaryDirectory()
        self.log_path = str(Path(self._tmp.name, "metrics.csv"))
        self.clock = FakeClock()
        self.transport = FakeTransport(clock=self.clock)
        self.store = MemoryTimestampStore()
        factory = functools.partial(Reconnector, transport=self.transport, clock=self.clock, sleep=self.clock.sleep)
        self._patches = [
            patch("retooth.api.Reconnector", factory),
            patch("retooth.api._get_store", lambda: self.store),
        ]
        for patcher in self._patches:
            patcher.start()
        self.client = TestClient(api_module.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        if api_module._rec is not None:
            self.client.portal.call(api_module._rec.close)
        self.client.__exit__(None, None, None)
        for patcher in self._patches:
            patcher.stop()
        api_module._rec = None
        api_module._store = None
        api_module._log_path = None
        self._tmp.cleanup()

    def _connect(self, **params):
        query = {"address": ADDRESS, "log": self.log_path}
        query.update(params)
        return self.client.post("/device/connect", params=query)

    def test_health_endpoint_returns_ok(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertIn("time", payload)

    def test_idle_without_a_device(self) -> None:
        self.assertEqual(self.client.get("/device/state").json(), {"status": "idle"})
        self.assertEqual(self.client.post("/device/check").json(), {"status": "idle"})
        self.assertEqual(self.client.post("/device/disconnect").json(), {"status": "idle"})

    def test_connect_rejects_invalid_metadata(self) -> None:
        response = self._connect(metadata="{not json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("Invalid metadata JSON", response.json()["detail"])

        response = self._connect(metadata="[1, 2]")
        self.assertEqual(response.status_code, 400)

    def test_connect_rejects_invalid_address(self) -> None:
        response = self._connect(address="FO:F8:F2:DA:37:6F")
        self.assertEqual(response.status_code, 400)
        self.assertIn("invalid hardware address", response.json()["detail"])
        self.assertEqual(self.transport.connect_calls, [])

    def test_connect_failure_maps_to_bad_gateway(self) -> None:
        self.transport.always_fail = True
        response = self._connect()
        self.assertEqual(response.status_code, 502)
        self.assertEqual(self.client.get("/device/state").json()["state"], "idle")

    def test_connect_check_and_disconnect_flow(self) -> None:
        response = self._connect(metadata=json.dumps({"role": "demo"}))
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "connected")
        self.assertEqual(payload["state"], "scheduled")
        self.assertEqual(payload["address"], ADDRESS)
        self.assertIsNotNone(payload["next_connection_time"])
        self.assertEqual(api_module._log_path, self.log_path)

        again = self._connect(address=ADDRESS.lower())
        self.assertEqual(again.json()["status"], "already-connected")
        self.assertEqual(len(self.transport.connect_calls), 1)

        state = self.client.get("/device/state").json()
        self.assertEqual(state["status"], "managed")
        self.assertTrue(state["first_connection"])

        self.assertEqual(self.client.post("/device/check").json()["status"], "waiting")

        response = self.client.post("/device/disconnect")
        self.assertEqual(response.json()["status"], "disconnected")
        self.assertEqual(response.json()["state"], "idle")
        self.assertEqual(self.client.post("/device/resume").json()["status"], "skipped")

    def test_check_after_the_interval_starts_a_burst(self) -> None:
        self._connect()
        self.clock.advance(400)

        response = self.client.post("/device/check")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "burst")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
