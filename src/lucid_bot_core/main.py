"""
LUCID Bot Core entrypoint.

CLI:
  lucid-bot-core run [--config PATH]           -> run bot (runtime mode)
  lucid-bot-core check-config [--config PATH]  -> validate config and print a summary
"""

from __future__ import annotations

import argparse
import logging
import signal
from typing import Optional

from lucid_bot_core.config import ConfigLoadError, load_config, package_version, resolve_config_path
from lucid_bot_core.lifecycle import BotLifecycle, ShutdownSignal


def _configure_logging() -> None:
    """
    Single log level for all scopes (core, session, command modules).
    Uses LUCID_BOT_LOG_LEVEL env until the config is loaded, else INFO.
    """
    from lucid_bot_core.core.log_config import apply_log_level_from_config

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    apply_log_level_from_config(None)


_configure_logging()
logger = logging.getLogger(__name__)


def get_version_string() -> str:
    return package_version()


def _install_signal_handlers(shutdown: ShutdownSignal) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_bot(config_path: Optional[str] = None) -> int:
    """
    Runtime mode: load config, register commands, connect, block until shutdown.
    Returns process exit code.
    """
    shutdown = ShutdownSignal()
    _install_signal_handlers(shutdown)

    logger.info("============================================================")
    logger.info("LUCID Bot Core")
    logger.info("Version: %s", get_version_string())
    logger.info("Config: %s", resolve_config_path(config_path))
    logger.info("============================================================")

    return BotLifecycle(config_path, shutdown=shutdown).run()


def check_config(config_path: Optional[str] = None) -> int:
    try:
        cfg = load_config(config_path)
    except ConfigLoadError as exc:
        print(f"invalid config: {exc}")
        return 1
    print(f"bot_id: {cfg.bot_id}")
    print(f"broker: {cfg.host}:{cfg.port}")
    print(f"prefix: {cfg.prefix}")
    for entry in cfg.workspaces.values():
        print(f"workspace {entry.name}: {entry.workspace_id} roles={','.join(entry.role_ids) or '-'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="lucid-bot-core")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    run_parser = sub.add_parser("run", help="Run bot runtime")
    run_parser.add_argument("--config", type=str, metavar="PATH", help="Path to config JSON file")

    check_parser = sub.add_parser("check-config", help="Validate the config file and print a summary")
    check_parser.add_argument("--config", type=str, metavar="PATH", help="Path to config JSON file")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_bot(args.config))

    if args.cmd == "check-config":
        raise SystemExit(check_config(args.config))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
