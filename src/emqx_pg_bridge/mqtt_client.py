"""
MQTT session management for the bridge.

ConnectionManager owns the broker session: initial connect (blocking until CONNACK),
background reconnect at a fixed interval, and re-subscription after every (re)connect.
Inbound messages are handed to a MessageDispatcher on the paho network thread.

Session states:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (lost) -> RECONNECTING -> CONNECTED

Every transition is logged and passed to an optional event listener.
"""

from __future__ import annotations

import logging
import ssl
import threading
from enum import Enum
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from emqx_pg_bridge.config import MQTTConfig
from emqx_pg_bridge.dispatcher import MessageDispatcher
from emqx_pg_bridge.errors import AuthenticationFailed, BrokerUnreachable

logger = logging.getLogger(__name__)

# MQTT v5 reason codes; paho maps the v3.1.1 CONNACK return codes 4 and 5 onto these.
_BAD_CREDENTIALS = 134
_NOT_AUTHORIZED = 135


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SessionEvent(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOST = "lost"
    RECONNECTING = "reconnecting"
    SUBSCRIBED = "subscribed"
    SUBSCRIBE_FAILED = "subscribe_failed"
    DISCONNECTED = "disconnected"


EventListener = Callable[[SessionEvent, dict[str, Any]], None]


class ConnectionManager:
    """
    Keeps one authenticated MQTT session alive and subscribed to the configured topic.

    connect() blocks for the first attempt only and raises BrokerUnreachable or
    AuthenticationFailed. After that, connection loss is retried forever by the paho
    network thread until disconnect().
    """

    def __init__(
        self,
        cfg: MQTTConfig,
        dispatcher: MessageDispatcher,
        *,
        on_event: Optional[EventListener] = None,
    ) -> None:
        self.cfg = cfg
        self._dispatcher = dispatcher
        self._on_event = on_event

        self._client: Optional[mqtt.Client] = None
        self._lock = threading.Lock()
        self._state = SessionState.DISCONNECTED
        self._subscribed = False
        self._closing = False
        self._pending_subs: dict[int, str] = {}

        self._connack = threading.Event()
        self._connack_rc: Any = None

    @property
    def state(self) -> SessionState:
        return self._state

    def is_connected(self) -> bool:
        client = self._client
        return bool(
            client is not None
            and client.is_connected()
            and self._state is SessionState.CONNECTED
        )

    def is_subscribed(self) -> bool:
        return self.is_connected() and self._subscribed

    def _emit(self, event: SessionEvent, **details: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event, details)
        except Exception:
            logger.exception("Session event listener failed for %s", event.value)

    def _set_state(self, state: SessionState) -> SessionState:
        with self._lock:
            prev, self._state = self._state, state
        return prev

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.cfg.client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
        )
        if self.cfg.username:
            client.username_pw_set(self.cfg.username, self.cfg.password or None)
        if self.cfg.ssl_enabled:
            if self.cfg.ssl_insecure:
                client.tls_set(cert_reqs=ssl.CERT_NONE)
            else:
                client.tls_set()

        # fixed interval: paho doubles the delay but never beyond max_delay
        interval = self.cfg.reconnect_interval_s
        client.reconnect_delay_set(min_delay=interval, max_delay=interval)
        client.connect_timeout = self.cfg.connect_timeout_s

        client.on_pre_connect = self._on_pre_connect
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        return client

    def connect(self) -> None:
        if self._client is not None:
            raise RuntimeError("ConnectionManager already has a session; call disconnect() first")

        self._closing = False
        self._subscribed = False
        self._pending_subs.clear()
        self._connack.clear()
        self._connack_rc = None

        client = self._build_client()
        self._client = client
        self._set_state(SessionState.CONNECTING)
        logger.info(
            "Connecting to MQTT broker %s:%s client_id=%s tls=%s",
            self.cfg.host,
            self.cfg.port,
            self.cfg.client_id or "<broker-assigned>",
            self.cfg.ssl_enabled,
        )
        self._emit(SessionEvent.CONNECTING, broker=self.cfg.broker)

        try:
            client.connect(self.cfg.host, self.cfg.port, keepalive=self.cfg.keepalive)
        except (OSError, ValueError) as exc:
            self._abort_initial()
            raise BrokerUnreachable(f"cannot reach broker {self.cfg.broker}: {exc}") from exc

        client.loop_start()

        if not self._connack.wait(timeout=self.cfg.connect_timeout_s):
            self._abort_initial()
            raise BrokerUnreachable(
                f"no CONNACK from {self.cfg.broker} within {self.cfg.connect_timeout_s}s"
            )

        rc = self._connack_rc
        if rc is not None and rc.is_failure:
            self._abort_initial()
            if rc.value in (_BAD_CREDENTIALS, _NOT_AUTHORIZED):
                raise AuthenticationFailed(f"broker {self.cfg.broker} rejected credentials: {rc}")
            raise BrokerUnreachable(f"broker {self.cfg.broker} refused connection: {rc}")

    def _abort_initial(self) -> None:
        client, self._client = self._client, None
        self._closing = True
        if client is not None:
            client.disconnect()
            client.loop_stop()
        self._set_state(SessionState.DISCONNECTED)

    def subscribe(self, topic: Optional[str] = None, qos: Optional[int] = None) -> bool:
        """
        Request the subscription. Safe to repeat; called after every (re)connect.
        Returns False if the request could not be sent. Broker acceptance is reported
        asynchronously as SUBSCRIBED or SUBSCRIBE_FAILED.
        """
        topic = topic or self.cfg.topic
        qos = self.cfg.qos if qos is None else qos
        client = self._client
        if client is None:
            return False

        rc, mid = client.subscribe(topic, qos=qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self._subscribed = False
            logger.error("Subscribe failed topic=%s err=%s", topic, mqtt.error_string(rc))
            self._emit(SessionEvent.SUBSCRIBE_FAILED, topic=topic, error=mqtt.error_string(rc))
            return False
        if mid is not None:
            self._pending_subs[mid] = topic
        return True

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            if client is None or self._closing:
                return
            self._closing = True

        logger.info("Disconnecting from MQTT broker")
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._client = None
            self._subscribed = False
            self._set_state(SessionState.DISCONNECTED)
            self._emit(SessionEvent.DISCONNECTED)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_pre_connect(self, client: mqtt.Client, userdata: Any) -> None:
        with self._lock:
            if self._closing or self._state in (SessionState.CONNECTING, SessionState.CONNECTED):
                return
            self._state = SessionState.RECONNECTING
        logger.info("Reconnecting to MQTT broker %s", self.cfg.broker)
        self._emit(SessionEvent.RECONNECTING, broker=self.cfg.broker)

    def _on_connect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        if self._closing:
            return
        initial = self._state is SessionState.CONNECTING
        if reason_code.is_failure:
            if initial:
                self._connack_rc = reason_code
                self._connack.set()
            else:
                logger.warning(
                    "MQTT reconnect refused rc=%s; retrying in %ss",
                    reason_code,
                    self.cfg.reconnect_interval_s,
                )
            return

        self._set_state(SessionState.CONNECTED)
        session_present = bool(getattr(flags, "session_present", False))
        logger.info(
            "Connected to MQTT broker %s%s; subscribing to %s",
            self.cfg.broker,
            "" if initial else " (reconnect)",
            self.cfg.topic,
        )
        self._emit(SessionEvent.CONNECTED, reconnect=not initial, session_present=session_present)

        self.subscribe()

        if initial:
            self._connack_rc = reason_code
            self._connack.set()

    def _on_connect_fail(self, client: mqtt.Client, userdata: Any) -> None:
        logger.warning(
            "MQTT reconnect attempt failed; retrying in %ss", self.cfg.reconnect_interval_s
        )

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        with self._lock:
            if self._closing or self._state is not SessionState.CONNECTED:
                return
            self._state = SessionState.DISCONNECTED
            self._subscribed = False
            # SUBACKs for this connection will never arrive
            self._pending_subs.clear()
        logger.warning("MQTT connection lost rc=%s", reason_code)
        self._emit(SessionEvent.LOST, reason=str(reason_code))

    def _on_subscribe(
        self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: list, properties: Any
    ) -> None:
        topic = self._pending_subs.pop(mid, self.cfg.topic)
        failed = [rc for rc in reason_code_list if rc.is_failure]
        if failed:
            self._subscribed = False
            logger.error("Broker rejected subscription topic=%s rc=%s", topic, failed[0])
            self._emit(SessionEvent.SUBSCRIBE_FAILED, topic=topic, error=str(failed[0]))
            return

        self._subscribed = True
        granted = reason_code_list[0].value if reason_code_list else None
        logger.info("Subscribed topic=%s qos=%s", topic, granted)
        self._emit(SessionEvent.SUBSCRIBED, topic=topic, qos=granted)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._dispatcher.dispatch(msg.topic, msg.payload)
