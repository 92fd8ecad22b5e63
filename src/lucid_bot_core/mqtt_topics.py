"""
MQTT Topic Schema for LUCID Bot Core.

All topics under lucid/bots/<bot_id>/.
Bot retained: metadata, status.
Bot stream: logs.
Workspace retained: workspaces/<workspace_id>/commands/<module_id>.
Workspace inbound: workspaces/<workspace_id>/events/<category>.
Workspace results: workspaces/<workspace_id>/evt/command/result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_BOT_ID_RE = re.compile(r"^[a-z0-9_]+$")
_NAME_RE = re.compile(r"^[a-z0-9_]+$")
_WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct or parse topics."""


def _validate(kind: str, value: str, pattern: re.Pattern[str], allowed: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicSchemaError(f"{kind} must be a non-empty string")
    if not pattern.fullmatch(value):
        raise TopicSchemaError(f"{kind} '{value}' is invalid; allowed: {allowed}")
    return value


def validate_module_id(module_id: str) -> str:
    return _validate("module_id", module_id, _NAME_RE, "[a-z0-9_]+")


def validate_category(category: str) -> str:
    return _validate("category", category, _NAME_RE, "[a-z0-9_]+")


def validate_workspace_id(workspace_id: str) -> str:
    return _validate("workspace_id", workspace_id, _WORKSPACE_ID_RE, "[A-Za-z0-9_-]+")


@dataclass(frozen=True, slots=True)
class TopicSchema:
    """
    MQTT topic schema for a single bot.
    Root: lucid/bots/<bot_id>
    """

    bot_id: str

    def __post_init__(self) -> None:
        _validate("bot_id", self.bot_id, _BOT_ID_RE, "[a-z0-9_]+")

    @property
    def base(self) -> str:
        return f"lucid/bots/{self.bot_id}"

    # -------------------------
    # Bot retained
    # -------------------------
    def metadata(self) -> str:
        return f"{self.base}/metadata"

    def status(self) -> str:
        return f"{self.base}/status"

    # -------------------------
    # Bot stream
    # -------------------------
    def logs(self) -> str:
        return f"{self.base}/logs"

    # -------------------------
    # Workspace topics
    # -------------------------
    def workspace_base(self, workspace_id: str) -> str:
        validate_workspace_id(workspace_id)
        return f"{self.base}/workspaces/{workspace_id}"

    def workspace_commands(self, workspace_id: str, module_id: str) -> str:
        validate_module_id(module_id)
        return f"{self.workspace_base(workspace_id)}/commands/{module_id}"

    def workspace_event(self, workspace_id: str, category: str) -> str:
        validate_category(category)
        return f"{self.workspace_base(workspace_id)}/events/{category}"

    def command_result(self, workspace_id: str) -> str:
        return f"{self.workspace_base(workspace_id)}/evt/command/result"

    def event_filter(self, category: str) -> str:
        """Subscription filter matching one event category in every workspace."""
        validate_category(category)
        return f"{self.base}/workspaces/+/events/{category}"

    def parse_event_topic(self, topic: str) -> tuple[str, str]:
        """Split an inbound event topic into (workspace_id, category)."""
        prefix = f"{self.base}/workspaces/"
        if not topic.startswith(prefix):
            raise TopicSchemaError(f"not an event topic for {self.bot_id}: {topic}")
        parts = topic[len(prefix):].split("/")
        if len(parts) != 3 or parts[1] != "events":
            raise TopicSchemaError(f"not an event topic for {self.bot_id}: {topic}")
        workspace_id, _, category = parts
        return validate_workspace_id(workspace_id), validate_category(category)
