from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from deriv_alerts.config import load_config
from deriv_alerts.logging_utils import get_logger
from .alerts import AlertEngine
from .deriv_feed import DerivFeedClient
from .errors import DerivAlertError, ReconnectExhaustedError
from .monitor import AlertMonitor
from .storage import select_store
from .symbols import SymbolResolver
from .telegram_hud import TelegramHUD


async def run_alert_service(config_path: str | Path) -> int:
    """
    Live mode:

    - Loads alerts from Redis (if reachable) or the JSON file.
    - Connects to Deriv, loads the symbol catalog, subscribes to alerted symbols.
    - Evaluates every tick and pushes fired alerts to Telegram.
    - Returns 1 once reconnects are exhausted, the only fatal condition.
    """
    cfg = load_config(config_path)
    logger = get_logger("live_app")
    mcfg = cfg.get("monitor", {}) or {}

    engine = AlertEngine(select_store(cfg))
    engine.init()
    client = DerivFeedClient(cfg)
    resolver = SymbolResolver(client.catalog)
    hud = TelegramHUD(cfg, resolver=resolver)
    monitor = AlertMonitor(client, engine, hud=hud, resolver=resolver)

    status_task = None
    try:
        await client.connect()
        await client.fetch_active_symbols()
        await monitor.subscribe_active()
        if not engine.active_symbols():
            logger.warning("No pre-configured alerts. Example: R_10 above 5400")
        hud.notify_startup(engine.pending_rules())

        status_task = asyncio.create_task(
            monitor.run_status_loop(
                interval_sec=float(mcfg.get("status_interval_sec", 30)),
                first_delay_sec=float(mcfg.get("first_status_delay_sec", 5)),
            )
        )
        logger.info("Alert service running with config=%s", config_path)
        await client.wait_closed_fatally()
    except ReconnectExhaustedError as exc:
        logger.critical("Feed unrecoverable: %s", exc)
        hud.notify_fatal(str(exc))
        return 1
    except DerivAlertError as exc:
        logger.error("Failed to start: %s", exc)
        return 1
    finally:
        if status_task is not None:
            status_task.cancel()
        await client.disconnect()
        engine.close()
    return 0


def list_alerts(config_path: str | Path) -> None:
    cfg = load_config(config_path)
    engine = AlertEngine(select_store(cfg))
    engine.init()
    print("Configured alerts:")
    print("-" * 60)
    for rule in engine.rules():
        status = "DISABLED" if not rule.enabled else "TRIGGERED" if rule.triggered else "ACTIVE"
        mode = "repeat" if rule.repeat else "once"
        print(f"{status:<9} {mode:<6} [{rule.id}] {rule.symbol}: {rule.condition.value.upper()} {rule.price}")
    print("-" * 60)
    engine.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Deriv price alert service")
    parser.add_argument(
        "--config",
        default="configs/deriv_alerts.yaml",
        help="Path to YAML config (default: configs/deriv_alerts.yaml)",
    )
    parser.add_argument("--list", action="store_true", help="List configured alerts and exit")
    args = parser.parse_args()

    if args.list:
        list_alerts(args.config)
        return

    logger = get_logger("live_app")
    try:
        code = asyncio.run(run_alert_service(args.config))
    except KeyboardInterrupt:
        logger.info("Shutting down alert service")
        code = 0
    raise SystemExit(code)


if __name__ == "__main__":
    main()
