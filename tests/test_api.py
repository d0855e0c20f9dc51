"""
Tests for the status API
"""

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from poolscaler.api import APIServer
from poolscaler.config import PoolConfig, ReconcilerSettings, Settings
from poolscaler.core.metrics import StaticMetricsSource
from poolscaler.database import ScalingRecord
from poolscaler.events import EventBus
from poolscaler.executors import DryRunExecutor
from poolscaler.main import ReconcilerService


@pytest.fixture
def service(clock, make_sample):
    settings = Settings(
        pools=[PoolConfig(name="general", min_size=2, max_size=6)],
        reconciler=ReconcilerSettings(metrics_source="static"),
    )
    source = StaticMetricsSource()
    source.push("general", make_sample(0.95, at=clock.now()))
    return ReconcilerService(
        settings,
        metrics_source=source,
        executor=DryRunExecutor(),
        event_bus=EventBus(),
        clock=clock,
    )


@pytest.fixture
def client(service):
    server = APIServer(service, {"host": "127.0.0.1", "port": 8080})
    return TestClient(server.app)


class TestStatusEndpoints:

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["pools"] == ["general"]

    def test_health_unhealthy_when_no_loop_running(self, client):
        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["state_store"] is None

    def test_health_reports_running_pools(self, client, service):
        service.loops["general"]._task = Mock(done=Mock(return_value=False))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["running_pools"] == ["general"]

    def test_health_reports_state_store(self, client, service):
        service.loops["general"]._task = Mock(done=Mock(return_value=False))
        service.state_store = Mock()
        service.state_store.health_check.return_value = False

        data = client.get("/health").json()

        assert data["state_store"] == "unavailable"
        assert data["status"] == "healthy"

    def test_list_pools(self, client):
        data = client.get("/pools").json()

        assert data["count"] == 1
        assert data["pools"][0]["pool"] == "general"
        assert data["pools"][0]["current_size"] is None

    def test_unknown_pool(self, client):
        assert client.get("/pools/missing").status_code == 404
        assert client.get("/pools/missing/signals").status_code == 404
        assert client.post("/pools/missing/evaluate").status_code == 404


class TestEvaluateEndpoint:

    def test_evaluate_runs_a_tick(self, client):
        response = client.post("/pools/general/evaluate")

        assert response.status_code == 200
        intent = response.json()["intent"]
        assert intent["direction"] == "up"
        assert intent["magnitude"] == 1

        pool = client.get("/pools/general").json()
        assert pool["state"]["current_size"] == 3
        assert pool["ticks"] == 1

    def test_signals_after_evaluate(self, client):
        client.post("/pools/general/evaluate")

        signals = client.get("/pools/general/signals").json()["signals"]

        assert "ScaleIntentIssued" in [signal["event_type"] for signal in signals]

    def test_failed_tick_is_server_error(self, client, service):
        service.metrics_source.get_latest_sample = Mock(side_effect=RuntimeError("boom"))

        response = client.post("/pools/general/evaluate")

        assert response.status_code == 500
        assert "boom" in response.json()["detail"]


class TestHistoryEndpoint:

    def test_history_disabled(self, client):
        assert client.get("/pools/general/history").status_code == 404

    def test_history_from_store(self, client, service):
        record = ScalingRecord("general", "up", 1, "HighUtilization", 2, 3, "succeeded", service.clock.now())
        service.history = Mock()
        service.history.recent.return_value = [record]

        data = client.get("/pools/general/history?limit=5").json()

        assert data["count"] == 1
        assert data["events"][0]["new_size"] == 3
        service.history.recent.assert_called_once_with("general", 5)
