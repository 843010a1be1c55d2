"""
Tests for backtest API endpoints.

Tests /backtests, /backtests/{run_id}/*, /backtests/stream and the service
endpoints with in-memory collaborators injected through dependency overrides.
"""

import json
import time
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from simtrade_engine.api.backtest_routes import get_backtest_store, get_bus, get_controller
from simtrade_engine.backtest.controller import BacktestController
from simtrade_engine.config import Settings, get_settings_dep
from simtrade_engine.domain.bar import BarInterval
from simtrade_engine.runtime.event_bus import EventBus
from simtrade_engine.storage.memory import (
    InMemoryBacktestStore,
    InMemoryBarProvider,
    InMemoryStrategyStore,
)
from simtrade_engine.strategies.evaluator import StrategyDefinition
from simtrade_engine.strategies.rules import (
    Comparator,
    Condition,
    IndicatorName,
    IndicatorRef,
    LiteralValue,
    RuleGroup,
)
from tests.synthetic_bars import START, make_bars, trending

TERMINAL = {"COMPLETED", "FAILED", "CANCELLED"}

# =============================================================================
# Fixtures
# =============================================================================


def always_long() -> StrategyDefinition:
    price = IndicatorRef(name=IndicatorName.PRICE)
    return StrategyDefinition(
        id="always_long",
        name="Always long",
        entry_rules=RuleGroup(
            rules=[Condition(left=price, comparator=Comparator.GT, right=LiteralValue(value=0))]
        ),
    )


@pytest.fixture
def store() -> InMemoryBacktestStore:
    return InMemoryBacktestStore()


@pytest.fixture
def test_client(temp_data_dir: Path, store: InMemoryBacktestStore) -> Iterator[TestClient]:
    """Create a test client wired to in-memory collaborators."""
    from simtrade_engine.main import app

    settings = Settings(data_dir=temp_data_dir, progress_every_n_bars=5)
    bars = InMemoryBarProvider()
    bars.add_bars("TEST", BarInterval.DAILY, make_bars(trending(40)))
    bus = EventBus()
    controller = BacktestController(
        store=store,
        bar_provider=bars,
        strategy_store=InMemoryStrategyStore([always_long()]),
        event_bus=bus,
        settings=settings,
    )

    app.dependency_overrides[get_settings_dep] = lambda: settings
    app.dependency_overrides[get_backtest_store] = lambda: store
    app.dependency_overrides[get_bus] = lambda: bus
    app.dependency_overrides[get_controller] = lambda: controller

    with TestClient(app) as client:
        yield client
        client.portal.call(controller.shutdown)
        client.portal.call(bus.close)

    app.dependency_overrides.clear()


def backtest_body(**overrides) -> dict:
    body = {
        "strategyId": "always_long",
        "symbol": "TEST",
        "startDate": START.isoformat(),
        "endDate": (START + timedelta(days=60)).isoformat(),
        "initialCash": 10000,
        "positionSize": 1000,
    }
    body.update(overrides)
    return body


def wait_for_terminal(client: TestClient, run_id: str, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/backtests/{run_id}").json()
        if body["status"] in TERMINAL:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Run {run_id} did not finish")


@pytest.fixture
def completed_run(test_client: TestClient) -> dict:
    response = test_client.post("/backtests", json=backtest_body())
    assert response.status_code == 202
    return wait_for_terminal(test_client, response.json()["run_id"])


# =============================================================================
# Start
# =============================================================================


class TestStartBacktest:
    """Tests for POST /backtests."""

    def test_start_and_complete(self, test_client: TestClient) -> None:
        response = test_client.post("/backtests", json=backtest_body())

        assert response.status_code == 202
        data = response.json()
        assert data["ok"] is True
        assert data["run_id"].startswith("backtest_")

        run = wait_for_terminal(test_client, data["run_id"])
        assert run["status"] == "COMPLETED"
        assert run["bars_processed"] == 40
        assert run["metrics"]["total_trades"] == 1
        assert run["config"]["strategy_id"] == "always_long"

    def test_unknown_strategy_is_404(self, test_client: TestClient) -> None:
        response = test_client.post("/backtests", json=backtest_body(strategyId="nope"))
        assert response.status_code == 404
        assert "nope" in response.json()["detail"]

    def test_start_after_end_is_400(self, test_client: TestClient) -> None:
        response = test_client.post(
            "/backtests", json=backtest_body(endDate=START.isoformat())
        )
        assert response.status_code == 400

    def test_invalid_body_is_422(self, test_client: TestClient) -> None:
        response = test_client.post("/backtests", json=backtest_body(initialCash=-5))
        assert response.status_code == 422


# =============================================================================
# Queries
# =============================================================================


class TestRunQueries:
    """Tests for the read endpoints."""

    def test_unknown_run_is_404(self, test_client: TestClient) -> None:
        assert test_client.get("/backtests/missing").status_code == 404
        assert test_client.get("/backtests/missing/trades").status_code == 404
        assert test_client.get("/backtests/missing/equity-curve").status_code == 404
        assert test_client.get("/backtests/missing/alerts").status_code == 404

    def test_list_runs(self, test_client: TestClient, completed_run: dict) -> None:
        data = test_client.get("/backtests", params={"symbol": "TEST"}).json()
        assert data["total"] == 1
        assert data["runs"][0]["id"] == completed_run["id"]

        other = test_client.get("/backtests", params={"strategy_id": "other"}).json()
        assert other["total"] == 0

        by_status = test_client.get("/backtests", params={"status": "COMPLETED"}).json()
        assert by_status["total"] == 1

    def test_trades(self, test_client: TestClient, completed_run: dict) -> None:
        run_id = completed_run["id"]
        data = test_client.get(f"/backtests/{run_id}/trades").json()
        assert data["total"] == 2
        assert [t["side"] for t in data["trades"]] == ["BUY", "SELL"]
        assert data["trades"][1]["exit_reason"] == "DATA_END"

        sells = test_client.get(f"/backtests/{run_id}/trades", params={"side": "SELL"}).json()
        assert sells["total"] == 1

        page = test_client.get(
            f"/backtests/{run_id}/trades", params={"limit": 1, "offset": 1}
        ).json()
        assert [t["side"] for t in page["trades"]] == ["SELL"]

    def test_equity_curve(self, test_client: TestClient, completed_run: dict) -> None:
        run_id = completed_run["id"]
        full = test_client.get(f"/backtests/{run_id}/equity-curve").json()
        assert full["resolution"] == "full"
        assert full["total"] == 40
        for point in full["points"]:
            assert point["cash"] + point["stock_value"] == pytest.approx(point["total_equity"])

        daily = test_client.get(
            f"/backtests/{run_id}/equity-curve", params={"resolution": "daily"}
        ).json()
        assert daily["total"] == 40

        bad = test_client.get(f"/backtests/{run_id}/equity-curve", params={"resolution": "yearly"})
        assert bad.status_code == 422

    def test_alerts(self, test_client: TestClient, completed_run: dict) -> None:
        response = test_client.get(f"/backtests/{completed_run['id']}/alerts")
        assert response.status_code == 200
        assert response.json()["run_id"] == completed_run["id"]


# =============================================================================
# Cancel and stream
# =============================================================================


class TestCancelAndStream:
    """Tests for cancellation and the SSE stream."""

    def test_cancel_finished_run_is_409(self, test_client: TestClient, completed_run: dict) -> None:
        response = test_client.post(f"/backtests/{completed_run['id']}/cancel")
        assert response.status_code == 409

    def test_cancel_unknown_run_is_404(self, test_client: TestClient) -> None:
        assert test_client.post("/backtests/missing/cancel").status_code == 404

    def test_stream_for_finished_run(self, test_client: TestClient, completed_run: dict) -> None:
        response = test_client.get("/backtests/stream", params={"run_id": completed_run["id"]})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = [f for f in response.text.split("\n\n") if f]
        assert len(frames) == 1
        event = json.loads(frames[0][len("data: ") :])
        assert event["type"] == "backtest.completed"
        assert event["data"]["status"] == "COMPLETED"

    def test_stream_unknown_run_is_404(self, test_client: TestClient) -> None:
        response = test_client.get("/backtests/stream", params={"run_id": "missing"})
        assert response.status_code == 404


# =============================================================================
# Service endpoints
# =============================================================================


class TestServiceEndpoints:
    """Tests for health, config and diagnostics."""

    def test_health(self, test_client: TestClient) -> None:
        data = test_client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["active_runs"] == 0

    def test_config(self, test_client: TestClient, temp_data_dir: Path) -> None:
        data = test_client.get("/config").json()
        assert data["data_dir"] == str(temp_data_dir.resolve())
        assert data["progress_every_n_bars"] == 5

    def test_diagnostics_logs(self, test_client: TestClient, completed_run: dict) -> None:
        data = test_client.get(
            "/diagnostics/logs", params={"run_id": completed_run["id"], "level": "INFO"}
        ).json()
        assert data["count"] >= 1
        assert all(log["run_id"] == completed_run["id"] for log in data["logs"])

    def test_diagnostics_bus(self, test_client: TestClient, completed_run: dict) -> None:
        data = test_client.get("/diagnostics/bus").json()
        assert data["stats"]["events_published"] > 0
