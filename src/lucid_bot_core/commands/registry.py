from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

from lucid_bot_core.commands.base import CommandModule, CommandModuleDescriptor, CommandSpec
from lucid_bot_core.commands.catalog import COMMAND_MODULES
from lucid_bot_core.commands.context import CommandContext
from lucid_bot_core.commands.permissions import PermissionOverlay, PermissionOverlayBuilder
from lucid_bot_core.config import BotConfig, WorkspaceEntry
from lucid_bot_core.events import HandlerError, InboundEvent
from lucid_bot_core.mqtt_topics import TopicSchema

logger = logging.getLogger(__name__)

PermissionsCallback = Callable[[PermissionOverlayBuilder], None]


class CommandSession(Protocol):
    topics: TopicSchema

    def register_commands(
        self,
        descriptor: CommandModuleDescriptor,
        workspace_id: str,
        permissions: Optional[PermissionsCallback] = None,
    ) -> PermissionOverlay: ...

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any: ...


class RegistrationError(RuntimeError):
    """One (module, workspace) registration failed. Recorded, never fatal."""

    def __init__(self, module_id: str, workspace_name: str, workspace_id: str, cause: BaseException) -> None:
        super().__init__(
            f"failed to register module {module_id} in workspace {workspace_name} ({workspace_id}): {cause}"
        )
        self.module_id = module_id
        self.workspace_name = workspace_name
        self.workspace_id = workspace_id
        self.cause = cause


@dataclass(frozen=True, slots=True)
class RegistrationResult:
    module_id: str
    workspace_name: str
    workspace_id: str
    ok: bool
    role_ids: tuple[str, ...] = ()
    error: RegistrationError | None = None


def discover(modules: Iterable[type[CommandModule]] = COMMAND_MODULES) -> list[CommandModuleDescriptor]:
    """Describe every module class in declaration order, once per class."""
    descriptors: list[CommandModuleDescriptor] = []
    seen: set[type] = set()
    for cls in modules:
        if cls in seen:
            continue
        seen.add(cls)
        descriptors.append(cls.describe())
    return descriptors


def allow_roles(role_ids: Iterable[str]) -> PermissionsCallback:
    role_ids = tuple(role_ids)

    def _configure(builder: PermissionOverlayBuilder) -> None:
        for role_id in role_ids:
            builder.add_role(role_id, True)

    return _configure


def _overlay(role_ids: Iterable[str]) -> PermissionOverlay:
    builder = PermissionOverlayBuilder()
    allow_roles(role_ids)(builder)
    return builder.build()


def register_all(
    session: CommandSession,
    descriptors: Iterable[CommandModuleDescriptor],
    config: BotConfig,
) -> list[RegistrationResult]:
    """
    Register every descriptor in every configured workspace.

    One failed (module, workspace) pair does not stop the others. Each failure
    is logged and returned as a result carrying a RegistrationError.
    """
    results: list[RegistrationResult] = []
    for descriptor in descriptors:
        for entry in config.workspaces.values():
            results.append(_register_one(session, descriptor, entry))
    return results


def _register_one(
    session: CommandSession,
    descriptor: CommandModuleDescriptor,
    entry: WorkspaceEntry,
) -> RegistrationResult:
    try:
        session.register_commands(descriptor, entry.workspace_id, allow_roles(entry.role_ids))
    except Exception as exc:
        error = RegistrationError(descriptor.module_id, entry.name, entry.workspace_id, exc)
        logger.error("%s", error)
        return RegistrationResult(
            module_id=descriptor.module_id,
            workspace_name=entry.name,
            workspace_id=entry.workspace_id,
            ok=False,
            role_ids=entry.role_ids,
            error=error,
        )
    logger.info(
        "Registered module %s in workspace %s (%s) for %d role(s)",
        descriptor.module_id,
        entry.name,
        entry.workspace_id,
        len(entry.role_ids),
    )
    return RegistrationResult(
        module_id=descriptor.module_id,
        workspace_name=entry.name,
        workspace_id=entry.workspace_id,
        ok=True,
        role_ids=entry.role_ids,
    )


class CommandRegistry:
    """
    Discovered command modules, their instances and the role grants that were
    registered for them. Routes command invocations from workspace events.
    """

    def __init__(
        self,
        session: CommandSession,
        config: BotConfig,
        modules: Iterable[type[CommandModule]] = COMMAND_MODULES,
    ) -> None:
        self._session = session
        self._config = config
        self._modules = tuple(modules)
        self.descriptors: list[CommandModuleDescriptor] = []
        self.results: list[RegistrationResult] = []
        self._instances: dict[str, CommandModule] = {}
        self._granted: dict[tuple[str, str], PermissionOverlay] = {}

    @property
    def failures(self) -> list[RegistrationResult]:
        return [r for r in self.results if not r.ok]

    def load(self) -> list[RegistrationResult]:
        self.descriptors = discover(self._modules)
        self._instances = {d.module_id: d.module_type() for d in self.descriptors}
        self.results = register_all(self._session, self.descriptors, self._config)
        self._granted = {
            (r.module_id, r.workspace_id): _overlay(r.role_ids) for r in self.results if r.ok
        }

        failures = self.failures
        if failures:
            logger.warning(
                "Command registration: %d of %d failed: %s",
                len(failures),
                len(self.results),
                "; ".join(str(r.error) for r in failures),
            )
        else:
            logger.info(
                "Command registration: %d module(s) x %d workspace(s) ok",
                len(self.descriptors),
                len(self._config.workspaces),
            )
        return self.results

    def clear(self) -> None:
        self.descriptors = []
        self.results = []
        self._instances = {}
        self._granted = {}

    def is_allowed(self, module_id: str, workspace_id: str, roles: Iterable[str]) -> bool:
        overlay = self._granted.get((module_id, workspace_id))
        if overlay is None:
            return False
        return any(overlay.allows(role) for role in roles)

    def resolve(self, name: str) -> Optional[tuple[CommandModuleDescriptor, CommandSpec]]:
        """Find a command by 'module.command' or by bare command name (first module wins)."""
        if "." in name:
            module_id, command_name = name.split(".", 1)
            for descriptor in self.descriptors:
                if descriptor.module_id == module_id:
                    spec = descriptor.command(command_name)
                    return (descriptor, spec) if spec else None
            return None
        for descriptor in self.descriptors:
            spec = descriptor.command(name)
            if spec:
                return descriptor, spec
        return None

    # -------------------------
    # Event handlers
    # -------------------------
    def handle_command(self, event: InboundEvent) -> None:
        """command event: {request_id, module, command, args, roles, user_id}."""
        data = event.json()
        module_id = data.get("module")
        command_name = data.get("command")
        if not isinstance(module_id, str) or not isinstance(command_name, str):
            raise HandlerError("command event requires string 'module' and 'command'")
        args = data.get("args") or {}
        if not isinstance(args, dict):
            raise HandlerError("command event 'args' must be an object")

        self._invoke(
            event.workspace_id,
            module_id,
            command_name,
            request_id=str(data.get("request_id", "")),
            user_id=data.get("user_id"),
            roles=_roles(data),
            args=args,
        )

    def handle_message(self, event: InboundEvent) -> None:
        """message_created event: run '<prefix><command> [argv...]' messages, ignore everything else."""
        data = event.json()
        content = data.get("content")
        prefix = self._config.prefix
        if not isinstance(content, str) or not content.startswith(prefix):
            return
        try:
            tokens = shlex.split(content[len(prefix):])
        except ValueError as exc:
            raise HandlerError(f"cannot parse command message: {exc}") from exc
        if not tokens:
            return

        resolved = self.resolve(tokens[0])
        if resolved is None:
            logger.debug("Ignoring unknown prefixed command %r in %s", tokens[0], event.workspace_id)
            return
        descriptor, spec = resolved
        self._invoke(
            event.workspace_id,
            descriptor.module_id,
            spec.name,
            request_id=str(data.get("request_id") or data.get("message_id") or ""),
            user_id=data.get("user_id"),
            roles=_roles(data),
            argv=tuple(tokens[1:]),
        )

    def _invoke(
        self,
        workspace_id: str,
        module_id: str,
        command_name: str,
        *,
        request_id: str,
        user_id: Any,
        roles: tuple[str, ...],
        args: Optional[dict[str, Any]] = None,
        argv: tuple[str, ...] = (),
    ) -> None:
        ctx = CommandContext(
            mqtt=self._session,
            topics=self._session.topics,
            config=self._config,
            workspace_id=workspace_id,
            module_id=module_id,
            command=command_name,
            request_id=request_id,
            user_id=str(user_id) if user_id is not None else None,
            roles=roles,
            args=dict(args or {}),
            argv=argv,
        )

        instance = self._instances.get(module_id)
        descriptor = next((d for d in self.descriptors if d.module_id == module_id), None)
        spec = descriptor.command(command_name) if descriptor else None
        if instance is None or spec is None or (module_id, workspace_id) not in self._granted:
            logger.info("Unknown command %s.%s in workspace %s", module_id, command_name, workspace_id)
            ctx.publish_result(ok=False, error="unknown command")
            return

        if not self.is_allowed(module_id, workspace_id, roles):
            entry = self._config.workspace_for_id(workspace_id)
            logger.info(
                "Denied %s.%s in workspace %s (%s) for user %s",
                module_id,
                command_name,
                entry.name if entry else "?",
                workspace_id,
                ctx.user_id,
            )
            ctx.publish_result(ok=False, error="forbidden")
            return

        try:
            result = getattr(instance, spec.attr)(ctx)
        except Exception as exc:
            logger.exception("Command %s.%s failed in workspace %s", module_id, command_name, workspace_id)
            ctx.publish_result(ok=False, error=str(exc) or type(exc).__name__)
            return
        ctx.publish_result(ok=True, result=result)
        logger.debug("Command %s.%s ok request_id=%s", module_id, command_name, request_id)


def _roles(data: dict[str, Any]) -> tuple[str, ...]:
    roles = data.get("roles") or []
    if not isinstance(roles, list):
        raise HandlerError("'roles' must be a list")
    return tuple(str(r) for r in roles)
