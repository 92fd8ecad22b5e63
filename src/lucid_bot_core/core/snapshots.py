"""
Retained snapshot builders for LUCID Bot Core.

Pure functions that build MQTT payload dicts.
"""

from __future__ import annotations

import platform
from datetime import datetime, timezone
from typing import Any, Iterable


def now_iso8601() -> str:
    """Return current UTC time as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def build_metadata(bot_id: str, version: str, prefix: str, workspace_ids: Iterable[str]) -> dict[str, Any]:
    """
    Build retained metadata. Contract: bot_id, version, prefix, workspaces, platform.
    """
    return {
        "bot_id": bot_id,
        "version": version,
        "prefix": prefix,
        "workspaces": list(workspace_ids),
        "platform": platform.system() or "unknown",
    }


def build_status(
    state: str,
    bot_id: str,
    connected_since_ts: str,
    uptime_s: float | int,
) -> dict[str, Any]:
    """
    Build retained status. Contract: state, bot_id, connected_since_ts, uptime_s.
    state: online | offline | idle | dnd
    """
    return {
        "state": state,
        "bot_id": bot_id,
        "connected_since_ts": connected_since_ts,
        "uptime_s": uptime_s,
    }


def build_command_result(
    request_id: str,
    module_id: str,
    command: str,
    *,
    ok: bool,
    result: Any = None,
    error: str | None = None,
) -> dict[str, Any]:
    """Build a command result event. Contract: request_id, module, command, ok, result, error, ts."""
    return {
        "request_id": request_id,
        "module": module_id,
        "command": command,
        "ok": ok,
        "result": result,
        "error": error,
        "ts": now_iso8601(),
    }
