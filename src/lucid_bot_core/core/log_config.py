"""
Apply log level from the config snapshot or env.

Single log level for all scopes (core, session, command modules).
Config log_level takes precedence over LUCID_BOT_LOG_LEVEL env.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "LUCID_BOT_LOG_LEVEL"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, logging.INFO)
    return level if isinstance(level, int) else logging.INFO


def level_from_cfg_or_env(log_level: Optional[str]) -> int:
    """
    Resolve log level: config log_level if present, else LUCID_BOT_LOG_LEVEL env, else INFO.
    """
    if isinstance(log_level, str) and log_level.strip():
        return _parse_level(log_level)
    raw = os.environ.get(LOG_LEVEL_ENV, "").strip()
    return _parse_level(raw) if raw else logging.INFO


def apply_log_level(level: int) -> None:
    """Set root logger level so all loggers use this level."""
    logging.getLogger().setLevel(level)


def apply_log_level_from_config(log_level: Optional[str]) -> None:
    """Resolve level from config (or env) and apply to root logger. Call once the config is loaded."""
    apply_log_level(level_from_cfg_or_env(log_level))
