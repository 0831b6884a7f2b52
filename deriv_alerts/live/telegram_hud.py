from __future__ import annotations

import os
from datetime import datetime
from typing import Iterable, List, Optional

import requests

from deriv_alerts.logging_utils import get_logger
from .alerts import AlertCondition, AlertRule
from .symbols import SymbolResolver


_ARROWS = {
    AlertCondition.ABOVE: "↑",
    AlertCondition.BELOW: "↓",
    AlertCondition.CROSSES: "↔",
}


class TelegramHUD:
    """
    Minimal Telegram notification sink for fired alerts.

    Formatting lives here; the engine only hands over rules and prices.
    """

    def __init__(self, cfg: dict, resolver: Optional[SymbolResolver] = None) -> None:
        tcfg = cfg.get("telegram", {}) or {}
        self.enabled = bool(tcfg.get("enabled", True))
        self.bot_token_env = str(tcfg.get("bot_token_env", "TELEGRAM_BOT_TOKEN"))
        self.chat_id_env = str(tcfg.get("chat_id_env", "TELEGRAM_CHAT_ID"))
        self.timeout_sec = float(tcfg.get("timeout_sec", 5))

        self.bot_token = os.getenv(self.bot_token_env)
        self.chat_ids: List[str] = [
            c.strip() for c in (os.getenv(self.chat_id_env) or "").split(",") if c.strip()
        ]
        self.resolver = resolver
        self.logger = get_logger("telegram_hud")

    # --- Core send -------------------------------------------------------

    def send_message(self, text: str, parse_mode: str = "Markdown") -> bool:
        if not self.enabled:
            return False
        if not self.bot_token or not self.chat_ids:
            self.logger.warning("Telegram credentials missing; skipping message")
            return False
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        delivered = True
        for chat_id in self.chat_ids:
            payload = {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": parse_mode,
            }
            try:
                resp = requests.post(url, json=payload, timeout=self.timeout_sec)
                if not resp.ok:
                    self.logger.warning("Telegram send failed: %s %s", resp.status_code, resp.text)
                    delivered = False
            except requests.RequestException as exc:
                self.logger.warning("Telegram send exception: %s", exc)
                delivered = False
        return delivered

    # --- High-level notifications ---------------------------------------

    def notify_alert(self, rule: AlertRule, price: float) -> bool:
        emoji = {"above": "📈", "below": "📉"}.get(rule.condition.value, "↔️")
        text = "\n".join(
            [
                "🚨 *PRICE ALERT* 🚨",
                "",
                f"{emoji} *{self._display(rule.symbol)}*",
                "",
                f"✅ Price {rule.condition.value.upper()} {rule.price}",
                f"📍 Current: *{price:.3f}*",
                "",
                f"⏰ {self._now()}",
            ]
        )
        self.logger.info(
            "ALERT #%d %s %s %s current=%.3f",
            rule.id,
            rule.symbol,
            rule.condition.value,
            rule.price,
            price,
        )
        return self.send_message(text)

    def notify_startup(self, pending: Iterable[AlertRule]) -> bool:
        rules = list(pending)
        if rules:
            lines = ["🟢 *Price Alert Bot Started*", "", f"📋 {len(rules)} Active Alerts:"]
            lines += [
                f"{_ARROWS[r.condition]} `{self._short(r.symbol)}` {r.condition.value} {r.price}"
                for r in rules
            ]
        else:
            lines = [
                "🟢 *Price Alert Bot Ready!*",
                "",
                "No alerts configured yet.",
                "",
                "Quick Symbols:",
                "🪙 BTC, ETH (Crypto)",
                "🥇 XAU, XAG (Metals)",
                "📈 V10, V25, V50, V75, V100 (Synthetics)",
            ]
        lines += ["", f"⏰ {self._now()}"]
        return self.send_message("\n".join(lines))

    def notify_fatal(self, reason: str) -> bool:
        text = "```\n" + "\n".join(["[FEED DOWN] giving up", reason]) + "\n```"
        return self.send_message(text)

    # --- Helpers ---------------------------------------------------------

    def _display(self, symbol: str) -> str:
        return self.resolver.display_name(symbol) if self.resolver else symbol

    def _short(self, symbol: str) -> str:
        alias = self.resolver.alias_of(symbol) if self.resolver else None
        return alias or symbol

    @staticmethod
    def _now() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")
