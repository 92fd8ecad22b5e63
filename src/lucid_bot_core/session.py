"""
Session client for LUCID Bot Core.

Owns the single MQTT connection for a process run. Publishes retained presence
(with an offline LWT) and metadata, flushes staged command registrations on
connect, and forwards inbound messages to subscribers by topic filter.

A session is single-use: UNINITIALIZED -> CONNECTED -> DISCONNECTED.
Broker-level reconnects are handled by paho inside the CONNECTED state.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from lucid_bot_core.commands.base import CommandModuleDescriptor
from lucid_bot_core.commands.permissions import PermissionOverlay, PermissionOverlayBuilder
from lucid_bot_core.config import BotConfig
from lucid_bot_core.core.log_handler import SessionLogHandler
from lucid_bot_core.core.snapshots import build_metadata, build_status, now_iso8601
from lucid_bot_core.mqtt_topics import TopicSchema

logger = logging.getLogger(__name__)

SubscriberCallback = Callable[[str, str], None]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionConnectionError(ConnectionError):
    """Raised when the session cannot be established (network, auth, timeout, reuse)."""


class SessionPublishError(RuntimeError):
    """Raised when a publish cannot be handed to the broker connection."""


class SessionClient:
    """
    MQTT session for the bot.
    Subscriptions and command registrations may be added before connect();
    they are applied when the broker accepts the connection.
    """

    def __init__(
        self,
        config: BotConfig,
        *,
        keepalive: int = 60,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self.config = config
        self.keepalive = keepalive
        self.connect_timeout_s = connect_timeout_s

        self.topics = TopicSchema(config.bot_id)
        self.client_id = f"lucid.bot.{config.bot_id}"

        # Ready notification, called on the network thread after each accepted connect.
        self.on_ready: Optional[Callable[["SessionClient"], None]] = None

        self._client: Optional[mqtt.Client] = None
        self._state = SessionState.UNINITIALIZED
        self._state_lock = threading.Lock()

        self._subscriptions: dict[str, SubscriberCallback] = {}
        self._subs_lock = threading.Lock()

        # (workspace_id, module_id) -> manifest; re-registration replaces
        self._registrations: dict[tuple[str, str], dict[str, Any]] = {}
        self._reg_lock = threading.Lock()

        self._connack = threading.Event()
        self._connect_failure: Optional[str] = None
        self._connected_since_ts: Optional[str] = None
        self._connected_ts: Optional[float] = None
        self._log_handler: Optional[SessionLogHandler] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> str:
        return self.config.bot_id

    def is_connected(self) -> bool:
        return bool(
            self._state is SessionState.CONNECTED
            and self._client is not None
            and self._client.is_connected()
        )

    # -------------------------
    # Connect / disconnect
    # -------------------------
    def connect(self) -> None:
        with self._state_lock:
            if self._state is not SessionState.UNINITIALIZED:
                raise SessionConnectionError(
                    f"session is {self._state.value}; create a new session to reconnect"
                )

        self._connected_ts = time.time()
        self._connected_since_ts = now_iso8601()

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(self.config.bot_id, self.config.token)

        # LWT is set once at connect; broker publishes it on crash or network loss.
        lwt = {"state": "offline", "bot_id": self.config.bot_id, "version": self.config.version}
        client.will_set(self.topics.status(), payload=json.dumps(lwt), qos=1, retain=True)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        try:
            client.connect(self.config.host, self.config.port, keepalive=self.keepalive)
        except (OSError, ValueError) as exc:
            self._abort()
            raise SessionConnectionError(
                f"cannot reach broker {self.config.host}:{self.config.port}: {exc}"
            ) from exc

        self._client = client
        client.loop_start()

        if not self._connack.wait(self.connect_timeout_s):
            self._abort()
            raise SessionConnectionError(
                f"no answer from broker {self.config.host}:{self.config.port} "
                f"within {self.connect_timeout_s:.0f}s"
            )
        if self._connect_failure is not None:
            reason = self._connect_failure
            self._abort()
            raise SessionConnectionError(f"broker rejected connection: {reason}")

    def _abort(self) -> None:
        with self._state_lock:
            self._state = SessionState.DISCONNECTED
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def disconnect(self) -> None:
        with self._state_lock:
            if self._state is not SessionState.CONNECTED:
                logger.debug("disconnect() ignored; session is %s", self._state.value)
                return
            self._state = SessionState.DISCONNECTED

        self._remove_log_handler()
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        logger.info("Session disconnected")

    # -------------------------
    # Presence / publish
    # -------------------------
    def update_presence(self, status: str) -> bool:
        """Best effort: returns False and logs on failure."""
        client = self._client
        if client is None:
            logger.warning("Cannot set presence %r; session not connected", status)
            return False
        uptime_s = 0.0
        if self._connected_ts is not None:
            uptime_s = max(0.0, time.time() - self._connected_ts)
        payload = build_status(status, self.config.bot_id, self._connected_since_ts or now_iso8601(), uptime_s)
        try:
            info = client.publish(self.topics.status(), payload=json.dumps(payload), qos=1, retain=True)
        except Exception as exc:
            logger.warning("Presence update to %r failed: %s", status, exc)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Presence update to %r failed rc=%s", status, info.rc)
            return False
        return True

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any:
        client = self._client
        if client is None or self._state is not SessionState.CONNECTED:
            raise SessionPublishError("session not connected")
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        info = client.publish(topic, payload=payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise SessionPublishError(f"publish to {topic} failed rc={info.rc}")
        return info

    # -------------------------
    # Subscriptions
    # -------------------------
    def subscribe(self, topic_filter: str, callback: SubscriberCallback) -> None:
        with self._subs_lock:
            self._subscriptions[topic_filter] = callback
        if self.is_connected():
            self._client.subscribe(topic_filter, qos=1)
        logger.debug("Subscribed: %s", topic_filter)

    def unsubscribe(self, topic_filter: str) -> bool:
        with self._subs_lock:
            removed = self._subscriptions.pop(topic_filter, None) is not None
        if removed and self.is_connected():
            self._client.unsubscribe(topic_filter)
        return removed

    def subscriptions(self) -> frozenset[str]:
        with self._subs_lock:
            return frozenset(self._subscriptions)

    # -------------------------
    # Command registration
    # -------------------------
    def register_commands(
        self,
        descriptor: CommandModuleDescriptor,
        workspace_id: str,
        permissions: Optional[Callable[[PermissionOverlayBuilder], None]] = None,
    ) -> PermissionOverlay:
        """
        Register a command module in one workspace with its permission overlay.

        The manifest is staged and published retained, so the latest
        registration for a (workspace, module) pair replaces earlier ones.
        Published immediately when connected, otherwise on connect.
        """
        builder = PermissionOverlayBuilder()
        if permissions is not None:
            permissions(builder)
        overlay = builder.build()

        topic = self.topics.workspace_commands(workspace_id, descriptor.module_id)
        manifest = {
            **descriptor.to_manifest(),
            "workspace_id": workspace_id,
            "permissions": overlay.to_payload(),
        }
        with self._reg_lock:
            self._registrations[(workspace_id, descriptor.module_id)] = manifest

        if self.is_connected():
            self.publish(topic, json.dumps(manifest, sort_keys=True), qos=1, retain=True)
        return overlay

    def registrations(self) -> dict[tuple[str, str], dict[str, Any]]:
        with self._reg_lock:
            return dict(self._registrations)

    def _flush_registrations(self) -> None:
        for (workspace_id, module_id), manifest in self.registrations().items():
            topic = self.topics.workspace_commands(workspace_id, module_id)
            try:
                self.publish(topic, json.dumps(manifest, sort_keys=True), qos=1, retain=True)
            except Exception:
                logger.exception("Failed to publish registration module=%s workspace=%s", module_id, workspace_id)

    # -------------------------
    # paho callbacks
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if client is not self._client:
            return
        if reason_code.is_failure:
            logger.error("MQTT connect failed: %s", reason_code)
            if self._state is SessionState.UNINITIALIZED:
                self._connect_failure = str(reason_code)
                self._connack.set()
            return

        with self._state_lock:
            if self._state is SessionState.DISCONNECTED:
                return
            first = self._state is SessionState.UNINITIALIZED
            self._state = SessionState.CONNECTED

        logger.info("Connected to MQTT broker as %s", self.config.bot_id)

        for topic_filter in sorted(self.subscriptions()):
            client.subscribe(topic_filter, qos=1)
            logger.info("Subscribed: %s", topic_filter)

        if not self.update_presence("online"):
            logger.warning("Online presence was not published")
        try:
            metadata = build_metadata(
                self.config.bot_id,
                self.config.version,
                self.config.prefix,
                [entry.workspace_id for entry in self.config.workspaces.values()],
            )
            self.publish(self.topics.metadata(), metadata, qos=1, retain=True)
        except Exception:
            logger.exception("Failed to publish retained metadata")

        self._flush_registrations()
        if first and self.config.logs_enabled:
            self._install_log_handler()

        self._connack.set()

        if self.on_ready is not None:
            try:
                self.on_ready(self)
            except Exception:
                logger.exception("Ready callback failed")

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if self._state is SessionState.CONNECTED and reason_code.is_failure:
            logger.warning("Unexpected disconnect: %s; paho will reconnect", reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._subs_lock:
            matched = [cb for flt, cb in self._subscriptions.items() if mqtt.topic_matches_sub(flt, msg.topic)]
        if not matched:
            logger.warning("Unhandled topic: %s", msg.topic)
            return
        try:
            payload_str = msg.payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.error("Payload decode failed topic=%s err=%s", msg.topic, exc)
            return
        for callback in matched:
            try:
                callback(msg.topic, payload_str)
            except Exception:
                logger.exception("Subscriber failed for topic %s", msg.topic)

    # -------------------------
    # Log forwarding
    # -------------------------
    def _install_log_handler(self) -> None:
        handler = SessionLogHandler(self, self.topics.logs())
        handler.setLevel(logging.DEBUG)  # filtering is done by logger levels
        logging.getLogger().addHandler(handler)
        self._log_handler = handler
        logger.info("Log forwarding enabled on %s", self.topics.logs())

    def _remove_log_handler(self) -> None:
        handler, self._log_handler = self._log_handler, None
        if handler is not None:
            logging.getLogger().removeHandler(handler)
