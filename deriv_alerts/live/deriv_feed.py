from __future__ import annotations

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from deriv_alerts.config import env_or
from deriv_alerts.logging_utils import get_logger
from .errors import (
    FeedClosedError,
    FeedConnectionError,
    FeedRequestError,
    ReconnectExhaustedError,
)
from .prices import PriceSample, PriceStore
from .subscriptions import Subscription, SubscriptionRegistry, TickCallback
from .symbols import DEFAULT_ALLOWED_MARKETS, SymbolCatalog


DEFAULT_APP_ID = "1089"  # Deriv public demo app id
DEFAULT_WS_URL = "wss://ws.derivws.com/websockets/v3"

Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff: base * 2^attempt, capped at max_delay."""
    return min(base_delay * (2 ** attempt), max_delay)


async def _default_connector(url: str) -> Any:
    # Keep-alive is the API-level ping below, not websocket control frames.
    return await websockets.connect(url, ping_interval=None, max_size=2 ** 22)


class DerivFeedClient:
    """
    Owns the single streaming connection to the Deriv websocket API.

    - Correlates requests and responses through a pending table keyed by req_id.
    - Routes ticks to the PriceStore, then to the subscriber callback.
    - Sends an API ping every ``heartbeat_sec`` while connected.
    - On unexpected loss, reconnects with exponential backoff and replays all
      subscriptions; after ``max_reconnect_attempts`` it enters FAILED for good.
    """

    def __init__(
        self,
        cfg: dict,
        connector: Optional[Connector] = None,
        catalog: Optional[SymbolCatalog] = None,
    ) -> None:
        dcfg = cfg.get("deriv", {}) or {}
        self.app_id = env_or(dcfg, "app_id", "app_id_env", "DERIV_APP_ID") or DEFAULT_APP_ID
        self.ws_url = str(dcfg.get("ws_url", DEFAULT_WS_URL))
        self.heartbeat_sec = float(dcfg.get("heartbeat_sec", 30))
        self.base_delay_sec = float(dcfg.get("base_delay_sec", 1.0))
        self.max_delay_sec = float(dcfg.get("max_delay_sec", 30.0))
        self.max_reconnect_attempts = int(dcfg.get("max_reconnect_attempts", 10))
        timeout = dcfg.get("request_timeout_sec")
        self.request_timeout_sec: Optional[float] = float(timeout) if timeout is not None else None
        self.allowed_markets = tuple(dcfg.get("allowed_markets", DEFAULT_ALLOWED_MARKETS))

        self.prices = PriceStore()
        self.catalog = catalog if catalog is not None else SymbolCatalog()
        self.subscriptions = SubscriptionRegistry(self.request, self.send)
        self.on_fatal: Optional[Callable[[ReconnectExhaustedError], Any]] = None

        self._connector = connector or _default_connector
        self._logger = get_logger("deriv_feed")
        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._req_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._failed: Optional[asyncio.Future] = None
        self._closing = False

    # Properties ----------------------------------------------------------

    @property
    def url(self) -> str:
        return f"{self.ws_url}?app_id={self.app_id}"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def backoff_delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay_sec, self.max_delay_sec)

    # Lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        if self._state is ConnectionState.FAILED:
            raise ReconnectExhaustedError("Feed client already gave up reconnecting")

        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        self._logger.info("Connecting to Deriv API: %s", self.ws_url)
        try:
            ws = await self._connector(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise FeedConnectionError(f"Could not connect to {self.ws_url}: {exc}") from exc

        self._ws = ws
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self._logger.info("Connected to Deriv API")
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))

    async def disconnect(self) -> None:
        """Operator-requested shutdown: no reconnect is scheduled."""
        self._closing = True
        current = asyncio.current_task()
        reconnect = self._reconnect_task
        if reconnect is not None and reconnect is not current and not reconnect.done():
            reconnect.cancel()
            await asyncio.gather(reconnect, return_exceptions=True)
        self._reconnect_task = None

        heartbeat = self._stop_heartbeat()
        if heartbeat is not None:
            await asyncio.gather(heartbeat, return_exceptions=True)

        ws, self._ws = self._ws, None
        self._fail_pending(FeedClosedError("Disconnected by request"))
        self.subscriptions.invalidate()

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not current and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if ws is not None:
            await ws.close()

        if self._state is not ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)
        self._logger.info("Disconnected from Deriv API")

    async def wait_closed_fatally(self) -> None:
        """Block until reconnects are exhausted, then raise ReconnectExhaustedError."""
        exc = await asyncio.shield(self._failure_future())
        raise exc

    # Requests ------------------------------------------------------------

    async def request(self, payload: Mapping[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a request tagged with a fresh req_id and wait for its response."""
        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            raise FeedClosedError("Not connected to Deriv API")

        req_id = self._next_req_id()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        wait = timeout if timeout is not None else self.request_timeout_sec
        try:
            await ws.send(json.dumps({**payload, "req_id": req_id}))
            if wait is None:
                return await fut
            return await asyncio.wait_for(fut, wait)
        except asyncio.TimeoutError as exc:
            raise FeedRequestError(f"No response to req_id={req_id} within {wait}s", code="Timeout") from exc
        except ConnectionClosed as exc:
            raise FeedClosedError(f"Connection closed while sending req_id={req_id}") from exc
        finally:
            self._pending.pop(req_id, None)

    async def send(self, payload: Mapping[str, Any]) -> int:
        """Fire-and-forget send; the response, if any, is not awaited."""
        ws = self._ws
        if ws is None:
            raise FeedClosedError("Not connected to Deriv API")
        req_id = self._next_req_id()
        try:
            await ws.send(json.dumps({**payload, "req_id": req_id}))
        except ConnectionClosed as exc:
            raise FeedClosedError("Connection closed while sending") from exc
        return req_id

    async def subscribe(self, symbol: str, callback: TickCallback) -> Subscription:
        return await self.subscriptions.subscribe(symbol, callback)

    async def unsubscribe(self, symbol: str) -> bool:
        return await self.subscriptions.unsubscribe(symbol)

    async def fetch_active_symbols(self) -> SymbolCatalog:
        response = await self.request({"active_symbols": "brief", "product_type": "basic"})
        self.catalog.load(response.get("active_symbols") or [], self.allowed_markets)
        return self.catalog

    # Prices --------------------------------------------------------------

    def get_price(self, symbol: str) -> Optional[float]:
        return self.prices.get(symbol)

    def get_price_sample(self, symbol: str) -> Optional[PriceSample]:
        return self.prices.get_sample(symbol)

    def all_prices(self) -> Mapping[str, PriceSample]:
        return self.prices.all()

    # Internal ------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self._logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state

    def _next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    def _failure_future(self) -> asyncio.Future:
        if self._failed is None:
            self._failed = asyncio.get_running_loop().create_future()
        return self._failed

    async def _read_loop(self, ws: Any) -> None:
        reason = "stream ended"
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            reason = str(exc) or "connection closed"
        except Exception as exc:  # pylint: disable=broad-except
            self._logger.exception("Feed read loop error: %s", exc)
            reason = f"read error: {exc}"
        self._on_transport_lost(ws, reason)

    async def _heartbeat_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_sec)
            if ws is not self._ws:
                return
            if self._state is not ConnectionState.CONNECTED:
                continue
            try:
                await ws.send(json.dumps({"ping": 1}))
            except ConnectionClosed:
                # The read loop sees the same close and handles it.
                return

    def _stop_heartbeat(self) -> Optional[asyncio.Task]:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(exc)

    def _on_transport_lost(self, ws: Any, reason: str) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader_task = None
        self._stop_heartbeat()
        self._fail_pending(FeedClosedError(f"Connection lost: {reason}"))
        self.subscriptions.invalidate()
        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._logger.warning("Disconnected from Deriv API (%s)", reason)
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing:
            if self._attempts >= self.max_reconnect_attempts:
                self._mark_failed()
                return
            delay = self.backoff_delay(self._attempts)
            self._attempts += 1
            self._set_state(ConnectionState.RECONNECTING)
            self._logger.warning(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                self._attempts,
                self.max_reconnect_attempts,
            )
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self.connect()
            except FeedConnectionError as exc:
                self._logger.warning("Reconnection failed: %s", exc)
                continue
            await self.subscriptions.replay()
            return

    def _mark_failed(self) -> None:
        self._set_state(ConnectionState.FAILED)
        exc = ReconnectExhaustedError(
            f"Max reconnection attempts reached ({self.max_reconnect_attempts})"
        )
        self._logger.critical("%s; giving up on the feed", exc)
        fut = self._failure_future()
        if not fut.done():
            fut.set_result(exc)
        if self.on_fatal is not None:
            self.on_fatal(exc)

    def _dispatch(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            self._logger.debug("Dropping non-JSON frame")
            return
        if not isinstance(msg, dict):
            return

        correlated = self._resolve_pending(msg)
        msg_type = msg.get("msg_type")
        if msg_type == "tick" and isinstance(msg.get("tick"), dict):
            self._handle_tick(msg["tick"])
        elif msg_type == "ping":
            pass
        elif msg.get("error") and not correlated:
            error = msg["error"]
            message = error.get("message") if isinstance(error, dict) else error
            self._logger.error("API error: %s", message)

    def _resolve_pending(self, msg: Dict[str, Any]) -> bool:
        req_id = msg.get("req_id")
        if req_id is None:
            return False
        fut = self._pending.pop(req_id, None)
        if fut is None or fut.done():
            return False
        error = msg.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            fut.set_exception(
                FeedRequestError(str(error.get("message", "Unknown feed error")), code=error.get("code"))
            )
        else:
            fut.set_result(msg)
        return True

    def _handle_tick(self, tick: Dict[str, Any]) -> None:
        symbol = tick.get("symbol")
        quote = tick.get("quote")
        if not symbol or quote is None:
            return
        try:
            price = float(quote)
        except (TypeError, ValueError):
            self._logger.warning("Bad quote for %s: %r", symbol, quote)
            return
        epoch = tick.get("epoch")
        epoch = int(epoch) if isinstance(epoch, (int, float)) else None

        previous = self.prices.update(symbol, price, epoch=epoch)
        callback = self.subscriptions.callback_for(symbol)
        if callback is None:
            return
        try:
            result = callback(symbol, price, previous)
        except Exception:  # pylint: disable=broad-except
            self._logger.exception("Tick callback failed for %s", symbol)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(self._log_callback_error)

    def _log_callback_error(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Async tick callback failed: %s", exc)
