from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Protocol

import redis

from deriv_alerts.config import env_or
from deriv_alerts.logging_utils import get_logger
from .errors import StorageError


DEFAULT_ALERTS_PATH = "config/alerts.json"
DEFAULT_REDIS_KEY = "deriv:alerts"


class AlertStore(Protocol):
    """Read/write contract for persisted alert rules (plain dicts, in order)."""

    name: str

    def load(self) -> List[Dict[str, Any]]:
        ...

    def save(self, rules: List[Dict[str, Any]]) -> None:
        ...


class FileAlertStore:
    """
    JSON document ``{"alerts": [...]}`` on local disk.

    Writes go to a sibling temp file first and are swapped in with os.replace.
    """

    name = "file"

    def __init__(self, path: str | Path = DEFAULT_ALERTS_PATH) -> None:
        self.path = Path(path)
        self._logger = get_logger("alert_store")

    def ensure(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write({"alerts": []})
            self._logger.info("Created new alerts file: %s", self.path)

    def load(self) -> List[Dict[str, Any]]:
        try:
            self.ensure()
            with self.path.open("r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to load alerts from {self.path}: {exc}") from exc
        alerts = doc.get("alerts", []) if isinstance(doc, dict) else None
        if not isinstance(alerts, list):
            raise StorageError(f"Malformed alerts file {self.path}: expected an 'alerts' list")
        return alerts

    def save(self, rules: List[Dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write({"alerts": rules})
        except OSError as exc:
            raise StorageError(f"Failed to save alerts to {self.path}: {exc}") from exc

    def _write(self, doc: Dict[str, Any]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)
        os.replace(tmp, self.path)


class RedisAlertStore:
    """Alert rules as one JSON array under a single Redis key."""

    name = "redis"

    def __init__(self, client: redis.Redis, key: str = DEFAULT_REDIS_KEY) -> None:
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str = DEFAULT_REDIS_KEY) -> "RedisAlertStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=2,
            retry_on_timeout=True,
        )
        return cls(client, key=key)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def load(self) -> List[Dict[str, Any]]:
        try:
            raw = self.client.get(self.key)
        except redis.RedisError as exc:
            raise StorageError(f"Failed to load alerts from Redis key {self.key}: {exc}") from exc
        if not raw:
            return []
        try:
            alerts = json.loads(raw)
        except ValueError as exc:
            raise StorageError(f"Malformed alerts under Redis key {self.key}: {exc}") from exc
        if not isinstance(alerts, list):
            raise StorageError(f"Malformed alerts under Redis key {self.key}: expected a list")
        return alerts

    def save(self, rules: List[Dict[str, Any]]) -> None:
        try:
            self.client.set(self.key, json.dumps(rules))
        except redis.RedisError as exc:
            raise StorageError(f"Failed to save alerts to Redis key {self.key}: {exc}") from exc


def select_store(cfg: dict) -> AlertStore:
    """Prefer Redis when a URL is configured and it answers PING; otherwise use the file."""
    scfg = cfg.get("storage", {}) or {}
    logger = get_logger("alert_store")
    path = scfg.get("alerts_path", DEFAULT_ALERTS_PATH)
    url = env_or(scfg, "redis_url", "redis_url_env", "REDIS_URL")

    if url:
        try:
            store = RedisAlertStore.from_url(url, key=str(scfg.get("redis_key", DEFAULT_REDIS_KEY)))
        except ValueError as exc:
            logger.warning("Invalid Redis URL (%s), using file storage", exc)
        else:
            if store.ping():
                logger.info("Using Redis for alert storage (key=%s)", store.key)
                return store
            logger.warning("Redis unavailable, using file storage")

    logger.info("Using file storage for alerts: %s", path)
    return FileAlertStore(path)
