"""
Tests for the service runner and the CLI entry point.
"""
import asyncio
import json
import sys
from unittest.mock import MagicMock

import pytest
import yaml

from deriv_alerts.live import app
from deriv_alerts.live.deriv_feed import DerivFeedClient
from tests.conftest import FakeConnector, wait_for


ALERTS = [
    {"id": 1, "symbol": "R_10", "name": "Volatility 10 Index", "condition": "above", "price": 100.0},
    {"id": 2, "symbol": "R_25", "name": "Volatility 25 Index", "condition": "below", "price": 5.5,
     "repeat": True},
    {"id": 3, "symbol": "R_10", "name": "Volatility 10 Index", "condition": "crosses", "price": 90.0,
     "triggered": True},
]


@pytest.fixture
def service_config(tmp_path, monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    alerts_path = tmp_path / "alerts.json"
    alerts_path.write_text(json.dumps({"alerts": ALERTS}), encoding="utf-8")
    cfg = {
        "deriv": {
            "app_id": "1089",
            "base_delay_sec": 0,
            "max_delay_sec": 0,
            "heartbeat_sec": 3600,
            "max_reconnect_attempts": 2,
        },
        "storage": {"alerts_path": str(alerts_path)},
        "telegram": {"enabled": False},
        "monitor": {"status_interval_sec": 3600, "first_status_delay_sec": 3600},
    }
    path = tmp_path / "service.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


@pytest.fixture
def wired(monkeypatch):
    """Swap in a fake transport and a mock notifier for the runner."""
    connector = FakeConnector()
    hud = MagicMock()
    monkeypatch.setattr(app, "DerivFeedClient", lambda cfg: DerivFeedClient(cfg, connector=connector))
    monkeypatch.setattr(app, "TelegramHUD", MagicMock(return_value=hud))
    return connector, hud


class TestRunAlertService:
    def test_exhausted_reconnects_exit_with_code_one(self, service_config, wired):
        connector, hud = wired

        async def scenario():
            async def lose_feed():
                await wait_for(lambda: hud.notify_startup.called)
                connector.always_fail = True
                connector.latest.drop()

            killer = asyncio.create_task(lose_feed())
            code = await asyncio.wait_for(app.run_alert_service(service_config), 5)
            await killer
            return code

        assert asyncio.run(scenario()) == 1
        hud.notify_fatal.assert_called_once()
        assert "Max reconnection attempts" in hud.notify_fatal.call_args[0][0]
        assert len(connector.urls) == 1 + 2

    def test_startup_subscribes_alerted_symbols(self, service_config, wired):
        connector, hud = wired

        async def scenario():
            async def lose_feed():
                await wait_for(lambda: hud.notify_startup.called)
                connector.always_fail = True
                connector.latest.drop()

            killer = asyncio.create_task(lose_feed())
            await asyncio.wait_for(app.run_alert_service(service_config), 5)
            await killer

        asyncio.run(scenario())
        first = connector.sockets[0]
        assert first.requests("active_symbols")
        assert sorted(m["ticks"] for m in first.requests("ticks")) == ["R_10", "R_25"]
        pending = list(hud.notify_startup.call_args[0][0])
        assert [r.id for r in pending] == [1, 2]

    def test_startup_failure_exits_with_code_one(self, service_config, wired):
        connector, hud = wired
        connector.always_fail = True

        code = asyncio.run(asyncio.wait_for(app.run_alert_service(service_config), 5))

        assert code == 1
        assert len(connector.urls) == 1
        hud.notify_startup.assert_not_called()
        hud.notify_fatal.assert_not_called()

    def test_shutdown_closes_socket_and_flushes_engine(self, service_config, wired, monkeypatch):
        connector, hud = wired
        closed = []
        original_close = app.AlertEngine.close

        def close(engine):
            closed.append(len(engine))
            original_close(engine)

        monkeypatch.setattr(app.AlertEngine, "close", close)

        async def scenario():
            task = asyncio.create_task(app.run_alert_service(service_config))
            await wait_for(lambda: hud.notify_startup.called)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert connector.sockets[0].closed is True
        assert closed == [3]


class TestListAlerts:
    def test_list_prints_every_rule_with_status(self, service_config, capsys):
        app.list_alerts(service_config)
        out = capsys.readouterr().out
        assert "Configured alerts:" in out
        assert "ACTIVE    once   [1] R_10: ABOVE 100.0" in out
        assert "ACTIVE    repeat [2] R_25: BELOW 5.5" in out
        assert "TRIGGERED once   [3] R_10: CROSSES 90.0" in out

    def test_main_list_flag_exits_without_connecting(self, service_config, wired, monkeypatch, capsys):
        connector, _ = wired
        monkeypatch.setattr(sys, "argv", ["deriv-alerts", "--config", str(service_config), "--list"])
        app.main()
        assert "[2] R_25" in capsys.readouterr().out
        assert connector.urls == []

    def test_main_exit_code_follows_service(self, service_config, monkeypatch):
        async def fake_service(path):
            return 1

        monkeypatch.setattr(app, "run_alert_service", fake_service)
        monkeypatch.setattr(sys, "argv", ["deriv-alerts", "--config", str(service_config)])
        with pytest.raises(SystemExit) as excinfo:
            app.main()
        assert excinfo.value.code == 1
