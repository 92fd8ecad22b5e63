"""
Bot Core configuration.

A single JSON document read once at startup. Secrets may also come from env
files loaded with python-dotenv.

Env file priority (lowest -> highest):
1) /etc/lucid/bot-core.env (system install)
2) ~/.config/lucid-bot-core/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)

The config path is the explicit argument, else LUCID_BOT_CONFIG, else ./config.json.
"""

from __future__ import annotations

import json
import os
import re
import sys
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from dotenv import load_dotenv

CONFIG_PATH_ENV = "LUCID_BOT_CONFIG"
TOKEN_ENV = "LUCID_BOT_TOKEN"
DEFAULT_CONFIG_PATH = Path("config.json")

DEFAULT_BOT_ID = "lucid_bot"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 1883
DEFAULT_POLL_INTERVAL_S = 2.0
DEFAULT_HANDLER_WORKERS = 8

_BOT_ID_RE = re.compile(r"^[a-z0-9_]+$")
_WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class ConfigLoadError(ValueError):
    """Raised when the config file is missing, unreadable or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("lucid-bot-core")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/lucid/bot-core.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "lucid-bot-core" / ".env"

    # 3) project override
    yield Path(".env")


def _load_env_files() -> None:
    for p in _env_paths():
        if p.is_file():
            # never override existing env vars; later files only fill gaps
            try:
                load_dotenv(p, override=False)
            except (OSError, UnicodeDecodeError) as exc:
                raise ConfigLoadError(f"Failed to read env file {p}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class WorkspaceEntry:
    """One named role-set: a workspace and the roles granted command access in it."""

    name: str
    workspace_id: str
    role_ids: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class BotConfig:
    token: str = field(repr=False)
    prefix: str
    workspaces: Mapping[str, WorkspaceEntry]
    bot_id: str = DEFAULT_BOT_ID
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: Optional[str] = None
    logs_enabled: bool = False
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    handler_workers: int = DEFAULT_HANDLER_WORKERS
    version: str = "0.0.0+dev"

    def workspace_for_id(self, workspace_id: str) -> Optional[WorkspaceEntry]:
        for entry in self.workspaces.values():
            if entry.workspace_id == workspace_id:
                return entry
        return None


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path)
    env_path = os.getenv(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _require_str(data: Mapping[str, Any], key: str, *, where: str = "config") -> str:
    v = data.get(key)
    if v is None or v == "":
        raise ConfigLoadError(f"Missing required field in {where}: {key}")
    if not isinstance(v, str):
        raise ConfigLoadError(f"Field {key} in {where} must be a string")
    return v


def _parse_int(key: str, raw: Any) -> int:
    if isinstance(raw, bool):
        raise ConfigLoadError(f"Invalid integer for {key}: {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigLoadError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: Any) -> float:
    if isinstance(raw, bool):
        raise ConfigLoadError(f"Invalid number for {key}: {raw!r}")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigLoadError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_role_ids(name: str, raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        raise ConfigLoadError(f"workspaces.{name}.role_ids must be a list")
    out: list[str] = []
    for role_id in raw:
        if isinstance(role_id, bool) or not isinstance(role_id, (str, int)):
            raise ConfigLoadError(f"workspaces.{name}.role_ids contains invalid id: {role_id!r}")
        role = str(role_id).strip()
        if not role:
            raise ConfigLoadError(f"workspaces.{name}.role_ids contains an empty id")
        if role not in out:
            out.append(role)
    return tuple(out)


def _parse_workspaces(raw: Any) -> Mapping[str, WorkspaceEntry]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigLoadError("Missing required field in config: workspaces (needs at least one entry)")

    entries: dict[str, WorkspaceEntry] = {}
    seen_ids: dict[str, str] = {}
    for name, meta in raw.items():
        if not isinstance(meta, dict):
            raise ConfigLoadError(f"workspaces.{name} must be an object")
        ws_raw = meta.get("workspace_id")
        if isinstance(ws_raw, int) and not isinstance(ws_raw, bool):
            ws_raw = str(ws_raw)
        workspace_id = _require_str({"workspace_id": ws_raw}, "workspace_id", where=f"workspaces.{name}")
        if not _WORKSPACE_ID_RE.fullmatch(workspace_id):
            raise ConfigLoadError(
                f"workspaces.{name}.workspace_id '{workspace_id}' is invalid; allowed: [A-Za-z0-9_-]+"
            )
        if workspace_id in seen_ids:
            raise ConfigLoadError(
                f"workspaces.{name} reuses workspace_id {workspace_id} of workspaces.{seen_ids[workspace_id]}"
            )
        seen_ids[workspace_id] = name
        if "role_ids" not in meta:
            raise ConfigLoadError(f"Missing required field in workspaces.{name}: role_ids")
        entries[name] = WorkspaceEntry(
            name=name,
            workspace_id=workspace_id,
            role_ids=_parse_role_ids(name, meta["role_ids"]),
        )
    return MappingProxyType(entries)


def parse_config(data: Any) -> BotConfig:
    """
    Validate a decoded config document and build the immutable snapshot.
    Raises ConfigLoadError on the first structural problem.
    """
    if not isinstance(data, dict):
        raise ConfigLoadError("Config document must be a JSON object")

    token = data.get("token") or os.getenv(TOKEN_ENV)
    token = _require_str({"token": token}, "token")
    prefix = _require_str(data, "prefix")
    workspaces = _parse_workspaces(data.get("workspaces"))

    bot_id = data.get("bot_id", DEFAULT_BOT_ID)
    if not isinstance(bot_id, str) or not _BOT_ID_RE.fullmatch(bot_id):
        raise ConfigLoadError(f"bot_id {bot_id!r} is invalid; allowed: [a-z0-9_]+")

    broker = data.get("broker", {})
    if not isinstance(broker, dict):
        raise ConfigLoadError("broker must be an object")
    host = broker.get("host", DEFAULT_HOST)
    if not isinstance(host, str) or not host:
        raise ConfigLoadError("broker.host must be a non-empty string")
    port = _parse_int("broker.port", broker.get("port", DEFAULT_PORT))
    if not (1 <= port <= 65535):
        raise ConfigLoadError(f"broker.port out of range: {port}")

    log_level = data.get("log_level")
    if log_level is not None and not isinstance(log_level, str):
        raise ConfigLoadError("log_level must be a string")

    logs_enabled = data.get("logs_enabled", False)
    if not isinstance(logs_enabled, bool):
        raise ConfigLoadError("logs_enabled must be a boolean")

    poll_interval_s = _parse_float("poll_interval_s", data.get("poll_interval_s", DEFAULT_POLL_INTERVAL_S))
    if poll_interval_s <= 0:
        raise ConfigLoadError("poll_interval_s must be > 0")

    handler_workers = _parse_int("handler_workers", data.get("handler_workers", DEFAULT_HANDLER_WORKERS))
    if handler_workers < 1:
        raise ConfigLoadError("handler_workers must be >= 1")

    return BotConfig(
        token=token,
        prefix=prefix,
        workspaces=workspaces,
        bot_id=bot_id,
        host=host,
        port=port,
        log_level=log_level,
        logs_enabled=logs_enabled,
        poll_interval_s=poll_interval_s,
        handler_workers=handler_workers,
        version=package_version(),
    )


def load_config(path: str | Path | None = None, *, dotenv_enabled: bool = True) -> BotConfig:
    """
    Read env files (for LUCID_BOT_CONFIG / LUCID_BOT_TOKEN), then read and
    validate the config file.

    Returns an immutable BotConfig. Raises ConfigLoadError on failure.
    """
    if dotenv_enabled:
        _load_env_files()

    cfg_path = resolve_config_path(path)
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigLoadError(f"Config file not found: {cfg_path}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"Failed to read config {cfg_path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigLoadError(f"Config file {cfg_path} is not valid UTF-8: {exc}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigLoadError(f"Config file {cfg_path} is not valid JSON: {exc}") from exc

    return parse_config(data)
