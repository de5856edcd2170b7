"""
Per-message dispatch from the MQTT session to a storage handler.

Fire-and-forget: a handler error is logged with its topic and dropped. Nothing is requeued,
retried or dead-lettered.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class MessageHandler(Protocol):
    def handle(self, topic: str, payload: bytes) -> None:
        """Persist one message. Raises on storage failure; returns normally otherwise."""


class MessageDispatcher:
    """Stateless pass-through; may be invoked from several threads at once."""

    def __init__(self, handler: MessageHandler) -> None:
        self._handler = handler

    def dispatch(self, topic: str, payload: bytes) -> None:
        logger.debug("Received message topic=%s size=%d", topic, len(payload))
        try:
            self._handler.handle(topic, payload)
        except Exception as exc:
            logger.error("Message handling failed topic=%s err=%s", topic, exc)
