from __future__ import annotations

import math
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from deriv_alerts.logging_utils import get_logger
from .errors import AlertValidationError, StorageError
from .storage import AlertStore


class AlertCondition(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    CROSSES = "crosses"

    @classmethod
    def parse(cls, value: Any) -> "AlertCondition":
        if isinstance(value, AlertCondition):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(c.value for c in cls)
            raise AlertValidationError(f"Invalid condition {value!r}; expected one of: {choices}") from None


def validate_price(value: Any) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise AlertValidationError(f"Invalid price {value!r}") from None
    if not math.isfinite(price) or price <= 0:
        raise AlertValidationError(f"Price must be a positive number, got {value!r}")
    return price


@dataclass
class AlertRule:
    id: int
    symbol: str
    name: str  # display name
    condition: AlertCondition
    price: float  # target
    enabled: bool = True
    repeat: bool = False
    triggered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["condition"] = self.condition.value
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AlertRule":
        return cls(
            id=int(raw["id"]),
            symbol=str(raw["symbol"]),
            name=str(raw.get("name") or raw["symbol"]),
            condition=AlertCondition.parse(raw["condition"]),
            price=float(raw["price"]),
            enabled=bool(raw.get("enabled", True)),
            repeat=bool(raw.get("repeat", False)),
            triggered=bool(raw.get("triggered", False)),
        )


def should_fire(rule: AlertRule, current: float, previous: float) -> bool:
    """
    Condition check for one candidate rule.

    above/below also fire when the price is already beyond target and the rule
    has not fired yet (rule created while the market sat past the level).
    crosses needs a genuine crossing in either direction.
    """
    target = rule.price
    if rule.condition is AlertCondition.ABOVE:
        return current >= target and (previous < target or not rule.triggered)
    if rule.condition is AlertCondition.BELOW:
        return current <= target and (previous > target or not rule.triggered)
    return (current >= target and previous < target) or (current <= target and previous > target)


class AlertEngine:
    """
    Owns the alert rule set and evaluates ticks against it.

    Persistence is best-effort: every write goes through one single-worker
    executor so saves are serialized, mutations wait for their save, and the
    evaluation path only queues one. Storage failures are logged, never raised.
    """

    def __init__(self, store: Optional[AlertStore] = None) -> None:
        self.store = store
        self._rules: List[AlertRule] = []
        self._logger = get_logger("alert_engine")
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alert-store")
        self._last_write: Optional[Future] = None
        self._closed = False

    # Loading -------------------------------------------------------------

    def init(self) -> int:
        """Load rules from the store; an unreachable or broken store yields an empty set."""
        if self.store is None:
            self._logger.warning("No alert store configured; alerts are kept in memory only")
            self._rules = []
            return 0
        try:
            raw_rules = self.store.load()
        except StorageError as exc:
            self._logger.warning("Could not load alerts (%s); starting with none", exc)
            raw_rules = []

        rules: List[AlertRule] = []
        for raw in raw_rules:
            try:
                rules.append(AlertRule.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                self._logger.warning("Skipping malformed alert %r: %s", raw, exc)
        self._rules = rules
        self._logger.info("Loaded %d alerts from %s storage", len(rules), self.store.name)
        return len(rules)

    # Queries -------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._rules)

    def rules(self) -> List[AlertRule]:
        return [replace(r) for r in self._rules]

    def get(self, rule_id: int) -> Optional[AlertRule]:
        rule = self._find(rule_id)
        return replace(rule) if rule is not None else None

    def enabled_rules(self) -> List[AlertRule]:
        return [replace(r) for r in self._rules if r.enabled]

    def pending_rules(self) -> List[AlertRule]:
        return [replace(r) for r in self._rules if r.enabled and not r.triggered]

    def active_symbols(self) -> List[str]:
        seen: Dict[str, None] = {}
        for rule in self._rules:
            if rule.enabled:
                seen.setdefault(rule.symbol, None)
        return list(seen)

    # Evaluation ----------------------------------------------------------

    def evaluate(self, symbol: str, current: float, previous: float) -> List[AlertRule]:
        """Return the rules fired by this tick, marking them triggered."""
        fired: List[AlertRule] = []
        dirty = False
        for rule in self._rules:
            if not rule.enabled or rule.symbol != symbol:
                continue
            if rule.triggered and not rule.repeat:
                continue
            if not should_fire(rule, current, previous):
                continue
            rule.triggered = True
            fired.append(replace(rule))
            if not rule.repeat:
                dirty = True
        if dirty:
            # Queued, not awaited: the next tick must not wait on storage.
            self._persist(wait=False)
        return fired

    # Mutations -----------------------------------------------------------

    def add(
        self,
        symbol: str,
        name: str,
        condition: Any,
        price: Any,
        repeat: bool = False,
    ) -> AlertRule:
        if not symbol:
            raise AlertValidationError("Symbol is required")
        rule = AlertRule(
            id=max((r.id for r in self._rules), default=0) + 1,
            symbol=symbol,
            name=name or symbol,
            condition=AlertCondition.parse(condition),
            price=validate_price(price),
            repeat=bool(repeat),
        )
        self._rules.append(rule)
        self._persist()
        self._logger.info("Added alert #%d: %s %s %s", rule.id, symbol, rule.condition.value, rule.price)
        return replace(rule)

    def remove(self, rule_id: int) -> bool:
        rule = self._find(rule_id)
        if rule is None:
            return False
        self._rules.remove(rule)
        self._renumber()
        self._persist()
        self._logger.info("Removed alert: %s %s %s", rule.symbol, rule.condition.value, rule.price)
        return True

    def remove_all(self) -> int:
        count = len(self._rules)
        self._rules = []
        self._persist()
        self._logger.info("Removed all %d alerts", count)
        return count

    def clear_triggered(self) -> int:
        """Drop fired one-shot rules; repeating rules stay."""
        keep = [r for r in self._rules if not r.triggered or r.repeat]
        count = len(self._rules) - len(keep)
        if count:
            self._rules = keep
            self._renumber()
            self._persist()
            self._logger.info("Cleared %d triggered alert(s)", count)
        return count

    def enable(self, rule_id: int) -> bool:
        rule = self._find(rule_id)
        if rule is None:
            return False
        rule.enabled = True
        rule.triggered = False
        self._persist()
        return True

    def disable(self, rule_id: int) -> bool:
        rule = self._find(rule_id)
        if rule is None:
            return False
        rule.enabled = False
        self._persist()
        return True

    def reset(self, rule_id: int) -> bool:
        rule = self._find(rule_id)
        if rule is None:
            return False
        rule.triggered = False
        self._persist()
        return True

    # Persistence ---------------------------------------------------------

    def flush(self) -> None:
        """Block until every queued write has been attempted."""
        last = self._last_write
        if last is not None:
            last.result()

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._writer.shutdown(wait=True)
        self._closed = True

    def _persist(self, wait: bool = True) -> None:
        if self.store is None:
            return
        snapshot = [r.to_dict() for r in self._rules]
        if self._closed:
            self._write(snapshot)
            return
        future = self._writer.submit(self._write, snapshot)
        self._last_write = future
        if wait:
            future.result()

    def _write(self, snapshot: List[Dict[str, Any]]) -> None:
        try:
            self.store.save(snapshot)
        except Exception as exc:  # pylint: disable=broad-except
            self._logger.error("Failed to save alerts: %s", exc)

    # Helpers -------------------------------------------------------------

    def _find(self, rule_id: int) -> Optional[AlertRule]:
        return next((r for r in self._rules if r.id == rule_id), None)

    def _renumber(self) -> None:
        for index, rule in enumerate(self._rules, start=1):
            rule.id = index
