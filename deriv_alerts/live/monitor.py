from __future__ import annotations

import asyncio
from typing import Any, Iterable, List, Optional

import pandas as pd

from deriv_alerts.logging_utils import get_logger
from .alerts import AlertCondition, AlertEngine, AlertRule, validate_price
from .deriv_feed import DerivFeedClient
from .errors import AlertValidationError, DerivAlertError
from .symbols import SymbolResolver
from .telegram_hud import TelegramHUD


class AlertMonitor:
    """
    Glue between the feed, the alert engine and the notification sink.

    Every subscription it opens uses ``on_tick`` as the callback, so the
    feed's replay after a reconnect keeps alerts flowing without help.
    """

    def __init__(
        self,
        client: DerivFeedClient,
        engine: AlertEngine,
        hud: Optional[TelegramHUD] = None,
        resolver: Optional[SymbolResolver] = None,
    ) -> None:
        self.client = client
        self.engine = engine
        self.hud = hud
        self.resolver = resolver or SymbolResolver(client.catalog)
        self._logger = get_logger("alert_monitor")

    # Tick path -----------------------------------------------------------

    def on_tick(self, symbol: str, current: float, previous: float) -> List[AlertRule]:
        fired = self.engine.evaluate(symbol, current, previous)
        for rule in fired:
            self._logger.info(
                "ALERT_FIRED id=%d symbol=%s condition=%s target=%s price=%s",
                rule.id,
                symbol,
                rule.condition.value,
                rule.price,
                current,
            )
            self._notify(rule, current)
        return fired

    def _notify(self, rule: AlertRule, price: float) -> None:
        if self.hud is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.hud.notify_alert(rule, price)
            return
        # Telegram HTTP is blocking; keep it off the tick loop.
        future = loop.run_in_executor(None, self.hud.notify_alert, rule, price)
        future.add_done_callback(self._log_notify_error)

    def _log_notify_error(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error("Alert notification failed: %s", exc)

    # Rule management -----------------------------------------------------

    async def add_alert(self, text_symbol: str, condition: Any, price: Any, repeat: bool = False) -> AlertRule:
        """Validate, subscribe if needed, then store the rule."""
        symbol = self.resolver.resolve(text_symbol)
        catalog = self.client.catalog
        if not catalog.is_valid(symbol):
            suggestions = [info.symbol for info in catalog.search(text_symbol, limit=3)]
            raise AlertValidationError(f"Invalid symbol: {text_symbol}", suggestions)
        parsed = AlertCondition.parse(condition)
        target = validate_price(price)

        if not self.client.subscriptions.is_subscribed(symbol):
            await self.client.subscribe(symbol, self.on_tick)

        info = catalog.info(symbol)
        name = info.display_name if info is not None else symbol
        return self.engine.add(symbol, name, parsed, target, repeat=repeat)

    async def remove_alert(self, rule_id: int) -> bool:
        rule = self.engine.get(rule_id)
        if rule is None or not self.engine.remove(rule_id):
            return False
        await self._release([rule.symbol])
        return True

    async def clear_triggered(self) -> int:
        before = {r.symbol for r in self.engine.rules()}
        count = self.engine.clear_triggered()
        await self._release(before)
        return count

    async def remove_all(self) -> int:
        before = {r.symbol for r in self.engine.rules()}
        count = self.engine.remove_all()
        await self._release(before)
        return count

    async def _release(self, symbols: Iterable[str]) -> None:
        """Unsubscribe symbols no enabled rule still needs."""
        still_needed = set(self.engine.active_symbols())
        for symbol in symbols:
            if symbol not in still_needed and symbol in self.client.subscriptions:
                await self.client.unsubscribe(symbol)

    async def subscribe_active(self) -> List[str]:
        """Subscribe every symbol with an enabled rule; invalid or refused symbols are skipped."""
        subscribed: List[str] = []
        symbols = self.engine.active_symbols()
        if symbols:
            self._logger.info("Subscribing to %d symbols: %s", len(symbols), ", ".join(symbols))
        for symbol in symbols:
            if not self.client.catalog.is_valid(symbol):
                self._logger.warning("Skipping invalid symbol: %s", symbol)
                continue
            try:
                await self.client.subscribe(symbol, self.on_tick)
            except DerivAlertError as exc:
                self._logger.warning("Could not subscribe to %s: %s", symbol, exc)
                continue
            subscribed.append(symbol)
        return subscribed

    # Status --------------------------------------------------------------

    def price_frame(self) -> pd.DataFrame:
        frame = self.client.prices.to_frame()
        active = self.engine.active_symbols()
        return frame[frame["symbol"].isin(active)].reset_index(drop=True)

    def pending_frame(self) -> pd.DataFrame:
        rows = []
        for rule in self.engine.pending_rules():
            current = self.client.get_price(rule.symbol)
            rows.append(
                {
                    "id": rule.id,
                    "symbol": rule.symbol,
                    "condition": rule.condition.value,
                    "target": rule.price,
                    "current": current,
                    "distance": rule.price - current if current is not None else float("nan"),
                }
            )
        return pd.DataFrame(rows, columns=["id", "symbol", "condition", "target", "current", "distance"])

    def status_frame(self) -> pd.DataFrame:
        """Latest prices per alerted symbol with pending-rule count and nearest distance."""
        status = self.price_frame().drop(columns=["updated_at"])
        pending = self.pending_frame()
        if pending.empty:
            status["pending"] = 0
            status["distance"] = float("nan")
            return status
        nearest = (
            pending.assign(distance=pending["distance"].abs())
            .groupby("symbol", sort=False)
            .agg(pending=("id", "count"), distance=("distance", "min"))
            .reset_index()
        )
        status = status.merge(nearest, on="symbol", how="left")
        status["pending"] = status["pending"].fillna(0).astype(int)
        return status

    def log_status(self) -> None:
        status = self.status_frame()
        if not status.empty:
            self._logger.info("CURRENT PRICES\n%s", status.to_string(index=False))
        pending = self.pending_frame()
        if not pending.empty:
            self._logger.info("PENDING ALERTS\n%s", pending.to_string(index=False))

    async def run_status_loop(self, interval_sec: float, first_delay_sec: float = 5.0) -> None:
        await asyncio.sleep(first_delay_sec)
        while True:
            self.log_status()
            await asyncio.sleep(interval_sec)
