"""
Command context for LUCID Bot Core.

Passed to every command method: who invoked what, in which workspace, plus
the session publisher and the shared config snapshot.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from lucid_bot_core.config import BotConfig
from lucid_bot_core.core.snapshots import build_command_result
from lucid_bot_core.mqtt_topics import TopicSchema

logger = logging.getLogger(__name__)


class MqttPublisher(Protocol):
    """
    Minimal publisher interface for command context.
    Keep it small to prevent tight coupling.
    """

    def publish(
        self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False
    ) -> Any: ...


@dataclass
class CommandContext:
    """
    Execution context for one command invocation.

    Provides:
    - invocation identity (workspace, module, command, request, user, roles)
    - parsed arguments (args for structured invocations, argv for prefixed messages)
    - JSON publishing through the session
    - result publishing to the workspace command-result topic
    """

    mqtt: MqttPublisher
    topics: TopicSchema
    config: BotConfig
    workspace_id: str
    module_id: str
    command: str
    request_id: str = ""
    user_id: Optional[str] = None
    roles: tuple[str, ...] = ()
    args: dict[str, Any] = field(default_factory=dict)
    argv: tuple[str, ...] = ()

    def publish(
        self, topic: str, payload: dict[str, Any], *, retain: bool = False, qos: int = 1
    ) -> Any:
        """
        Publish a dict payload with JSON encoding.

        Raises:
            TypeError/ValueError: If the payload cannot be JSON-encoded
        """
        try:
            payload_str = json.dumps(payload)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to JSON-encode payload for %s: %s", topic, exc)
            raise

        return self.mqtt.publish(topic, payload_str, qos=qos, retain=retain)

    def publish_result(self, *, ok: bool, result: Any = None, error: Optional[str] = None) -> None:
        """Publish the outcome of this invocation to the workspace result topic."""
        payload = build_command_result(
            self.request_id,
            self.module_id,
            self.command,
            ok=ok,
            result=result,
            error=error,
        )
        self.publish(self.topics.command_result(self.workspace_id), payload, retain=False, qos=1)
