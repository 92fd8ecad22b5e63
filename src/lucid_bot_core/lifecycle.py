"""
Bot lifecycle controller.

CREATED -> CONFIGURING -> CONNECTING -> RUNNING -> DISCONNECTING -> DISPOSED

The controller owns the session and everything built from the config
snapshot. They live in one Runtime object that is passed to the pieces that
need it and dropped as a whole on shutdown. A controller is single-use.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from lucid_bot_core.commands.base import CommandModule
from lucid_bot_core.commands.catalog import COMMAND_MODULES
from lucid_bot_core.commands.registry import CommandRegistry
from lucid_bot_core.config import BotConfig, ConfigLoadError, load_config
from lucid_bot_core.core.log_config import apply_log_level_from_config
from lucid_bot_core.events import EventDispatcher, EventHandler
from lucid_bot_core.session import SessionClient, SessionConnectionError

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    CREATED = "created"
    CONFIGURING = "configuring"
    CONNECTING = "connecting"
    RUNNING = "running"
    DISCONNECTING = "disconnecting"
    DISPOSED = "disposed"


class LifecycleError(RuntimeError):
    """Raised when a lifecycle step is called out of order."""


class ShutdownSignal:
    """One-shot shutdown flag: set once from any thread, observed many times."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class Runtime:
    config: BotConfig
    session: SessionClient
    registry: CommandRegistry
    dispatcher: EventDispatcher


class BotLifecycle:
    def __init__(
        self,
        config_path: str | Path | None = None,
        *,
        shutdown: Optional[ShutdownSignal] = None,
        config_loader: Callable[[str | Path | None], BotConfig] = load_config,
        session_factory: Callable[[BotConfig], SessionClient] = SessionClient,
        modules: Iterable[type[CommandModule]] = COMMAND_MODULES,
        extra_handlers: Optional[Mapping[str, EventHandler]] = None,
        poll_interval_s: Optional[float] = None,
    ) -> None:
        self.config_path = config_path
        self.shutdown_signal = shutdown or ShutdownSignal()
        self._config_loader = config_loader
        self._session_factory = session_factory
        self._modules = tuple(modules)
        self._extra_handlers = dict(extra_handlers or {})
        self._poll_interval_s = poll_interval_s

        self.config: Optional[BotConfig] = None
        self.runtime: Optional[Runtime] = None
        self._state = LifecycleState.CREATED
        self._lock = threading.Lock()

    @property
    def state(self) -> LifecycleState:
        return self._state

    def _transition(self, expected: LifecycleState, new: LifecycleState) -> None:
        with self._lock:
            if self._state is not expected:
                raise LifecycleError(f"cannot move to {new.value} from {self._state.value}")
            self._state = new
        logger.debug("Lifecycle: %s -> %s", expected.value, new.value)

    # -------------------------
    # Startup
    # -------------------------
    def configure(self) -> BotConfig:
        self._transition(LifecycleState.CREATED, LifecycleState.CONFIGURING)
        config = self._config_loader(self.config_path)
        apply_log_level_from_config(config.log_level)
        self.config = config
        logger.info(
            "Config loaded: bot_id=%s broker=%s:%s workspaces=%s",
            config.bot_id,
            config.host,
            config.port,
            ", ".join(config.workspaces),
        )
        return config

    def prepare(self) -> Runtime:
        if self.config is None:
            raise LifecycleError("prepare() requires a loaded config")
        self._transition(LifecycleState.CONFIGURING, LifecycleState.CONNECTING)
        config = self.config

        session = self._session_factory(config)
        session.on_ready = self._on_ready
        registry = CommandRegistry(session, config, self._modules)
        handlers: dict[str, EventHandler] = {
            "command": registry.handle_command,
            "message_created": registry.handle_message,
        }
        handlers.update(self._extra_handlers)
        dispatcher = EventDispatcher(handlers, max_workers=config.handler_workers)
        self.runtime = Runtime(config=config, session=session, registry=registry, dispatcher=dispatcher)

        registry.load()
        dispatcher.attach(session)
        logger.info("Event handlers attached: %s", ", ".join(dispatcher.categories))
        return self.runtime

    def connect(self) -> None:
        if self.runtime is None:
            raise LifecycleError("connect() requires prepare()")
        with self._lock:
            if self._state is not LifecycleState.CONNECTING:
                raise LifecycleError(f"cannot connect from {self._state.value}")
        self.runtime.session.connect()
        self._transition(LifecycleState.CONNECTING, LifecycleState.RUNNING)
        logger.info("Bot running (shutdown via SIGINT/SIGTERM)")

    def _on_ready(self, session: SessionClient) -> None:
        logger.info("============================================================")
        logger.info("Logged in as %s with prefix %s", session.identity, session.config.prefix)
        logger.info("============================================================")

    # -------------------------
    # Running
    # -------------------------
    def wait_for_shutdown(self) -> None:
        if self._state is not LifecycleState.RUNNING:
            raise LifecycleError(f"cannot wait for shutdown from {self._state.value}")
        interval = self._poll_interval_s
        if interval is None:
            interval = self.config.poll_interval_s if self.config else 2.0
        while not self.shutdown_signal.is_set():
            self.shutdown_signal.wait(interval)
        logger.info("Shutdown requested")

    # -------------------------
    # Shutdown
    # -------------------------
    def shutdown(self) -> bool:
        """
        Disconnect and release everything exactly once. Returns False if the
        controller was already disposed or is being disposed by another caller.
        """
        with self._lock:
            if self._state in (LifecycleState.DISCONNECTING, LifecycleState.DISPOSED):
                return False
            self._state = LifecycleState.DISCONNECTING
        logger.info("Shutting down...")

        rt, self.runtime = self.runtime, None
        try:
            if rt is not None:
                self._teardown(rt)
        finally:
            self.config = None
            with self._lock:
                self._state = LifecycleState.DISPOSED
        logger.info("Shutdown complete")
        return True

    def _teardown(self, rt: Runtime) -> None:
        # handlers still running may race the disconnect; their publishes then fail and are logged
        if rt.session.is_connected():
            rt.session.update_presence("offline")
        try:
            rt.session.disconnect()
        except Exception:
            logger.exception("Error disconnecting session")

        rt.dispatcher.detach(rt.session)
        rt.dispatcher.close()
        rt.registry.clear()
        rt.session.on_ready = None

    # -------------------------
    # Whole run
    # -------------------------
    def run(self) -> int:
        """Run startup, block until shutdown is signalled, then dispose. Returns process exit code."""
        try:
            self.configure()
        except ConfigLoadError as exc:
            logger.error("Configuration failed: %s", exc)
            self.shutdown()
            return 1
        except Exception:
            logger.exception("Configuration failed")
            self.shutdown()
            return 1

        try:
            self.prepare()
            self.connect()
        except SessionConnectionError as exc:
            logger.error("Connection failed: %s", exc)
            self.shutdown()
            return 1
        except Exception:
            logger.exception("Startup failed")
            self.shutdown()
            return 1

        try:
            self.wait_for_shutdown()
        finally:
            self.shutdown()
        return 0
