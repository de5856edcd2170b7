"""
Logging setup for the bridge process.

One level for every logger. --debug wins, then BRIDGE_LOG_LEVEL env, then INFO.
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# paho logs every packet at DEBUG
_NOISY_LOGGERS = ("paho",)


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def resolve_level(debug: bool = False) -> int:
    if debug:
        return logging.DEBUG
    raw = os.environ.get("BRIDGE_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(debug: bool = False) -> int:
    """Install the stderr handler (once) and apply the resolved level to the root logger."""
    level = resolve_level(debug)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
    return level
