"""
emqx-pg-bridge entrypoint.

CLI:
  emqx-pg-bridge run [--config PATH] [--env-file PATH] [--debug]
      -> bridge MQTT telemetry into PostgreSQL
  emqx-pg-bridge --version
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from emqx_pg_bridge.config import package_version
from emqx_pg_bridge.core.log_config import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1
EXIT_CONFIG_INVALID = 2


@dataclass
class Runtime:
    shutdown: threading.Event
    session: Optional[Any] = None
    sink: Optional[Any] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_bridge(env_file: Optional[Path] = None, config_file: Optional[Path] = None) -> int:
    """
    Open storage, connect to the broker, then block until SIGINT/SIGTERM.
    Returns process exit code.
    """
    from emqx_pg_bridge.config import ConfigError, load_config
    from emqx_pg_bridge.dispatcher import MessageDispatcher
    from emqx_pg_bridge.errors import BrokerError, StorageUnavailable
    from emqx_pg_bridge.mqtt_client import ConnectionManager
    from emqx_pg_bridge.storage.postgres import PostgresSink

    try:
        cfg = load_config(env_file=env_file, config_file=config_file)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_INVALID

    logger.info("============================================================")
    logger.info("EMQX -> PostgreSQL bridge")
    logger.info("Version: %s", cfg.version)
    logger.info("Broker: %s topic=%s qos=%s", cfg.mqtt.broker, cfg.mqtt.topic, cfg.mqtt.qos)
    logger.info("Table: %s@%s/%s", cfg.postgres.table, cfg.postgres.host, cfg.postgres.database)
    logger.info("============================================================")

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    try:
        rt.sink = PostgresSink.open(cfg.postgres)
    except StorageUnavailable as exc:
        logger.error("Storage unavailable: %s", exc)
        return EXIT_STARTUP_FAILED

    rt.session = ConnectionManager(cfg.mqtt, MessageDispatcher(rt.sink))
    try:
        rt.session.connect()
    except BrokerError as exc:
        logger.error("MQTT connection failed: %s", exc)
        rt.session = None
        _shutdown(rt)
        return EXIT_STARTUP_FAILED

    logger.info("Bridge running, waiting for messages (shutdown via SIGINT/SIGTERM)")

    try:
        while not rt.shutdown.wait(timeout=0.5):
            pass
    finally:
        _shutdown(rt)

    return EXIT_OK


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")

    # Stop intake first so no new inserts start against a closing pool
    if rt.session:
        try:
            rt.session.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        else:
            logger.info("MQTT disconnected")

    if rt.sink:
        try:
            rt.sink.close()
        except Exception:
            logger.exception("Error closing storage")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="emqx-pg-bridge")
    p.add_argument("--version", action="version", version=package_version())

    sub = p.add_subparsers(dest="cmd", required=True)

    run_parser = sub.add_parser("run", help="Run the MQTT -> PostgreSQL bridge")
    run_parser.add_argument(
        "--config",
        type=str,
        metavar="PATH",
        help="YAML config file with emqx/postgresql sections (default: ./config/config.yaml or ./config.yaml)",
    )
    run_parser.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Extra env file with MQTT_* / PG_* settings (process env still wins)",
    )
    run_parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        configure_logging(debug=args.debug)
        env_file = Path(args.env_file) if args.env_file else None
        config_file = Path(args.config) if args.config else None
        raise SystemExit(run_bridge(env_file, config_file))


if __name__ == "__main__":
    main()
