"""
Tests for the Telegram notification sink.
"""
from unittest.mock import MagicMock, patch

import requests

from deriv_alerts.live.alerts import AlertCondition, AlertRule
from deriv_alerts.live.symbols import SymbolResolver
from deriv_alerts.live.telegram_hud import TelegramHUD


RULE = AlertRule(id=1, symbol="cryBTCUSD", name="BTC/USD", condition=AlertCondition.ABOVE, price=95000.0)


def _hud(monkeypatch, token="tkn", chats="111, 222"):
    if token is None:
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    else:
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", token)
    monkeypatch.setenv("TELEGRAM_CHAT_ID", chats)
    return TelegramHUD({}, resolver=SymbolResolver())


def test_missing_credentials_skip_send(monkeypatch):
    hud = _hud(monkeypatch, token=None)
    with patch("deriv_alerts.live.telegram_hud.requests.post") as post:
        assert hud.send_message("hi") is False
    post.assert_not_called()


def test_disabled_hud_does_not_send(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tkn")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "111")
    hud = TelegramHUD({"telegram": {"enabled": False}})
    with patch("deriv_alerts.live.telegram_hud.requests.post") as post:
        assert hud.send_message("hi") is False
    post.assert_not_called()


def test_sends_to_every_chat(monkeypatch):
    hud = _hud(monkeypatch)
    with patch("deriv_alerts.live.telegram_hud.requests.post") as post:
        post.return_value = MagicMock(ok=True)
        assert hud.send_message("hello") is True
    chat_ids = [c.kwargs["json"]["chat_id"] for c in post.call_args_list]
    assert chat_ids == ["111", "222"]
    assert post.call_args.args[0] == "https://api.telegram.org/bottkn/sendMessage"
    assert post.call_args.kwargs["timeout"] == 5.0


def test_send_failures_are_swallowed(monkeypatch):
    hud = _hud(monkeypatch, chats="111")
    with patch("deriv_alerts.live.telegram_hud.requests.post") as post:
        post.side_effect = requests.ConnectionError("offline")
        assert hud.send_message("hello") is False
        post.side_effect = None
        post.return_value = MagicMock(ok=False, status_code=400, text="bad")
        assert hud.send_message("hello") is False


def test_alert_message_format(monkeypatch):
    hud = _hud(monkeypatch, chats="111")
    with patch("deriv_alerts.live.telegram_hud.requests.post") as post:
        post.return_value = MagicMock(ok=True)
        hud.notify_alert(RULE, 95012.3456)
    text = post.call_args.kwargs["json"]["text"]
    assert "PRICE ALERT" in text
    assert "BTC (cryBTCUSD)" in text
    assert "Price ABOVE 95000.0" in text
    assert "95012.346" in text


def test_startup_lists_pending_rules(monkeypatch):
    hud = _hud(monkeypatch, chats="111")
    with patch("deriv_alerts.live.telegram_hud.requests.post") as post:
        post.return_value = MagicMock(ok=True)
        hud.notify_startup([RULE])
        listed = post.call_args.kwargs["json"]["text"]
        hud.notify_startup([])
        empty = post.call_args.kwargs["json"]["text"]
    assert "1 Active Alerts" in listed
    assert "↑ `BTC` above 95000.0" in listed
    assert "No alerts configured yet." in empty
