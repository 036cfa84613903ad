"""
HTTP API Tests
==============

The FastAPI app with the synthetic camera behind it.
"""

import time

from fastapi.testclient import TestClient


def _wait_for_state(client, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get("/status").json()["state"] == state:
            return True
        time.sleep(0.05)
    return False


class TestEndpoints:
    """Tests for the HTTP surface."""

    def test_info_health_ready(self):
        from camcast.main import app

        with TestClient(app) as client:
            info = client.get("/")
            assert info.status_code == 200
            assert info.json()["service"] == "camcast"

            assert client.get("/health").json()["status"] == "healthy"

            ready = client.get("/ready")
            assert ready.status_code == 200
            assert ready.json()["state"] == "IDLE"

    def test_control_round_trip(self):
        """start -> WAITING_FOR_CONNECTION, stop -> IDLE."""
        from camcast.main import app

        with TestClient(app) as client:
            reply = client.post("/control/start")
            assert reply.json() == {"accepted": True, "command": "START_STREAM"}
            assert _wait_for_state(client, "WAITING_FOR_CONNECTION")

            status = client.get("/status").json()
            assert status["server"]["listening"] is True
            assert status["wait_remaining_sec"] > 0

            client.post("/control/stop video server")
            assert _wait_for_state(client, "IDLE")

    def test_unknown_command_not_accepted(self):
        from camcast.main import app

        with TestClient(app) as client:
            reply = client.post("/control/selfdestruct")

            assert reply.status_code == 200
            assert reply.json()["accepted"] is False
            assert client.get("/status").json()["state"] == "IDLE"

    def test_status_websocket(self):
        from camcast.main import app

        with TestClient(app) as client:
            with client.websocket_connect("/ws/status") as websocket:
                payload = websocket.receive_json()

        assert payload["state"] == "IDLE"
        assert "metrics" in payload

    def test_not_ready_without_lifespan(self):
        """Outside the lifespan the appliance is not running."""
        from camcast.main import app

        client = TestClient(app)
        assert client.get("/ready").status_code == 503
        assert client.post("/control/start").status_code == 503
