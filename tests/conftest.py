"""
Pytest configuration and fixtures.

The feed tests drive the real DerivFeedClient against an in-memory websocket
that speaks just enough of the Deriv protocol to answer subscribe, forget,
ping and active_symbols requests.
"""
import asyncio
import json
import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

os.environ.setdefault("DERIV_LOG_DIR", tempfile.mkdtemp(prefix="deriv-alerts-logs-"))

_CLOSED = object()


ACTIVE_SYMBOLS = [
    {"symbol": "R_10", "display_name": "Volatility 10 Index", "market": "synthetic_index",
     "submarket": "random_index", "submarket_display_name": "Continuous Indices", "exchange_is_open": 1},
    {"symbol": "R_25", "display_name": "Volatility 25 Index", "market": "synthetic_index",
     "submarket": "random_index", "submarket_display_name": "Continuous Indices", "exchange_is_open": 1},
    {"symbol": "cryBTCUSD", "display_name": "BTC/USD", "market": "cryptocurrency",
     "submarket": "non_stable_coin", "submarket_display_name": "Cryptocurrencies", "exchange_is_open": 1},
    {"symbol": "frxXAUUSD", "display_name": "Gold/USD", "market": "commodities",
     "submarket": "metals", "submarket_display_name": "Metals", "exchange_is_open": 1},
    {"symbol": "frxEURUSD", "display_name": "EUR/USD", "market": "forex",
     "submarket": "major_pairs", "submarket_display_name": "Major Pairs", "exchange_is_open": 1},
]


class DerivResponder:
    """Answers outbound requests the way the Deriv API does."""

    def __init__(self) -> None:
        self.rejected: Set[str] = set()
        self.silent = False
        self._sub_counter = 0

    def __call__(self, msg: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self.silent:
            return []
        req_id = msg.get("req_id")
        if "ticks" in msg:
            symbol = msg["ticks"]
            if symbol in self.rejected:
                return [{
                    "msg_type": "tick",
                    "req_id": req_id,
                    "error": {"code": "InvalidSymbol", "message": f"Symbol {symbol} is invalid."},
                }]
            self._sub_counter += 1
            return [{
                "msg_type": "tick",
                "req_id": req_id,
                "subscription": {"id": f"sub-{symbol}-{self._sub_counter}"},
            }]
        if "forget" in msg:
            return [{"msg_type": "forget", "forget": 1, "req_id": req_id}]
        if "ping" in msg:
            return [{"msg_type": "ping", "ping": "pong"}]
        if "active_symbols" in msg:
            return [{"msg_type": "active_symbols", "active_symbols": ACTIVE_SYMBOLS, "req_id": req_id}]
        return []


class FakeWebSocket:
    """Async-iterable websocket stand-in; tests push inbound frames and drop the link."""

    def __init__(self, responder: Optional[Callable[[Dict[str, Any]], List[Dict[str, Any]]]] = None) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.responder = responder
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        msg = json.loads(data)
        self.sent.append(msg)
        if self.responder is not None:
            for reply in self.responder(msg):
                self.push(reply)

    def push(self, msg: Any) -> None:
        self._inbox.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    def push_tick(self, symbol: str, quote: float, epoch: int = 1700000000) -> None:
        self.push({"msg_type": "tick", "tick": {"symbol": symbol, "quote": quote, "epoch": epoch}})

    def drop(self) -> None:
        """Simulate an unexpected close from the server side."""
        self._inbox.put_nowait(_CLOSED)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def requests(self, key: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if key in m]

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self, responder: Optional[DerivResponder] = None, auto_respond: bool = True) -> None:
        self.responder = responder or DerivResponder()
        self.auto_respond = auto_respond
        self.sockets: List[FakeWebSocket] = []
        self.urls: List[str] = []
        self.fail_next = 0
        self.always_fail = False

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.always_fail or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise ConnectionRefusedError("connection refused")
        ws = FakeWebSocket(self.responder if self.auto_respond else None)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


class MemoryStore:
    """AlertStore that keeps every saved snapshot."""

    name = "memory"

    def __init__(self, initial: Optional[List[Dict[str, Any]]] = None) -> None:
        self.initial = list(initial or [])
        self.saves: List[List[Dict[str, Any]]] = []

    def load(self) -> List[Dict[str, Any]]:
        return list(self.initial)

    def save(self, rules: List[Dict[str, Any]]) -> None:
        self.saves.append(rules)


@pytest.fixture
def feed_cfg():
    """Fast reconnects and a heartbeat that never fires unless a test asks for it."""
    return {
        "deriv": {
            "app_id": "1089",
            "base_delay_sec": 0,
            "max_delay_sec": 0,
            "heartbeat_sec": 3600,
            "max_reconnect_attempts": 3,
        }
    }


@pytest.fixture
def memory_store():
    return MemoryStore()
