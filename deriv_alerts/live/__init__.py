"""
Live Deriv alert engine.

This package provides:
- Symbol resolution and the active-symbol catalog
- The Deriv websocket client (reconnect, heartbeat, subscription replay)
- Per-symbol price state and the alert rule engine
- Alert persistence (JSON file or Redis) and the Telegram sink
- A runner entrypoint used via: python -m deriv_alerts.live.app
"""
from .alerts import AlertCondition, AlertEngine, AlertRule
from .deriv_feed import ConnectionState, DerivFeedClient
from .monitor import AlertMonitor
from .prices import PriceSample, PriceStore
from .storage import FileAlertStore, RedisAlertStore, select_store
from .subscriptions import Subscription, SubscriptionRegistry
from .symbols import SymbolCatalog, SymbolInfo, SymbolResolver
from .telegram_hud import TelegramHUD
from .app import run_alert_service

__all__ = [
    "AlertCondition",
    "AlertEngine",
    "AlertRule",
    "ConnectionState",
    "DerivFeedClient",
    "AlertMonitor",
    "PriceSample",
    "PriceStore",
    "FileAlertStore",
    "RedisAlertStore",
    "select_store",
    "Subscription",
    "SubscriptionRegistry",
    "SymbolCatalog",
    "SymbolInfo",
    "SymbolResolver",
    "TelegramHUD",
    "run_alert_service",
]
