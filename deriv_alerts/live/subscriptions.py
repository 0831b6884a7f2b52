from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from deriv_alerts.logging_utils import get_logger
from .errors import DerivAlertError, FeedRequestError


TickCallback = Callable[[str, float, float], Any]
RequestFn = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
SendFn = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class Subscription:
    symbol: str
    handle: Optional[str]  # None once the connection that issued it is gone
    callback: TickCallback


class SubscriptionRegistry:
    """
    Active tick subscriptions keyed by symbol.

    - At most one upstream subscription per symbol; re-subscribing only swaps the callback.
    - Concurrent subscribes for the same symbol share one upstream request.
    - On transport loss every handle goes stale; ``replay()`` re-issues them
      with the original callbacks once the connection is back.
    """

    def __init__(self, request: RequestFn, send: SendFn) -> None:
        self._request = request
        self._send = send
        self._records: Dict[str, Subscription] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._removals: Dict[str, int] = {}
        self._logger = get_logger("subscriptions")

    # Queries -------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._records

    def is_subscribed(self, symbol: str) -> bool:
        record = self._records.get(symbol)
        return record is not None and record.handle is not None

    def symbols(self) -> List[str]:
        return list(self._records)

    def handle_for(self, symbol: str) -> Optional[str]:
        record = self._records.get(symbol)
        return record.handle if record is not None else None

    def callback_for(self, symbol: str) -> Optional[TickCallback]:
        record = self._records.get(symbol)
        return record.callback if record is not None else None

    def snapshot(self) -> List[Tuple[str, TickCallback]]:
        return [(r.symbol, r.callback) for r in self._records.values()]

    # Mutations -----------------------------------------------------------

    async def subscribe(self, symbol: str, callback: TickCallback) -> Subscription:
        existing = self._records.get(symbol)
        if existing is not None and existing.handle is not None:
            existing.callback = callback
            self._logger.info("Already subscribed to %s; callback replaced", symbol)
            return existing

        pending = self._inflight.get(symbol)
        if pending is not None:
            record = await asyncio.shield(pending)
            if self._records.get(symbol) is not record:
                # Dropped while in flight; this caller still wants the symbol.
                return await self.subscribe(symbol, callback)
            record.callback = callback
            return record

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[symbol] = fut
        try:
            response = await self._request({"ticks": symbol, "subscribe": 1})
            handle = (response.get("subscription") or {}).get("id")
            if not handle:
                raise FeedRequestError(f"Subscribe response for {symbol} carried no subscription id")
            record = Subscription(symbol=symbol, handle=str(handle), callback=callback)
            self._records[symbol] = record
            fut.set_result(record)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as exc:
            fut.set_exception(exc)
            fut.exception()  # consumed here; waiters re-raise it themselves
            raise
        finally:
            self._inflight.pop(symbol, None)

        self._logger.info("Subscribed to %s (handle=%s)", symbol, record.handle)
        return record

    async def unsubscribe(self, symbol: str) -> bool:
        record = self._records.pop(symbol, None)
        if record is None:
            return False
        self._removals[symbol] = self._removals.get(symbol, 0) + 1
        if record.handle is not None:
            try:
                await self._send({"forget": record.handle})
            except DerivAlertError as exc:
                self._logger.warning("Forget for %s not delivered: %s", symbol, exc)
        self._logger.info("Unsubscribed from %s", symbol)
        return True

    def invalidate(self) -> None:
        """Mark every handle stale after the transport is lost."""
        for record in self._records.values():
            record.handle = None

    async def replay(self) -> List[str]:
        """
        Resubscribe every known symbol from scratch, keeping its callback.

        Each symbol is attempted independently; returns the symbols that failed.
        """
        failed: List[str] = []
        for symbol, callback in self.snapshot():
            record = self._records.get(symbol)
            if record is None:
                # Unsubscribed while an earlier symbol was being replayed.
                continue
            record.handle = None
            removals = self._removals.get(symbol, 0)
            try:
                await self.subscribe(symbol, callback)
            except DerivAlertError as exc:
                self._logger.warning("Resubscribe failed for %s: %s", symbol, exc)
                if self._removals.get(symbol, 0) == removals:
                    failed.append(symbol)
                continue
            if self._removals.get(symbol, 0) != removals:
                # Unsubscribed while its own request was in flight.
                await self.unsubscribe(symbol)
        if failed:
            self._logger.warning("Replay finished with %d failure(s): %s", len(failed), ", ".join(failed))
        else:
            self._logger.info("Replayed %d subscription(s)", len(self._records))
        return failed
