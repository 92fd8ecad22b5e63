# lucid_bot_core/commands/base.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar, TypeVar

from lucid_bot_core.mqtt_topics import validate_module_id

_COMMAND_ATTR = "__lucid_command__"

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    description: str
    attr: str


@dataclass(frozen=True, slots=True)
class CommandModuleDescriptor:
    """A command module as registered with the session. Identity is module_type."""

    module_type: type
    module_id: str
    description: str
    commands: tuple[CommandSpec, ...]

    def command(self, name: str) -> CommandSpec | None:
        for spec in self.commands:
            if spec.name == name:
                return spec
        return None

    def to_manifest(self) -> dict[str, Any]:
        return {
            "module": self.module_id,
            "description": self.description,
            "commands": [{"name": c.name, "description": c.description} for c in self.commands],
        }


def command(name: str | None = None, *, description: str = "") -> Callable[[F], F]:
    """Mark a CommandModule method as a remotely invokable command."""

    def decorator(fn: F) -> F:
        doc = (fn.__doc__ or "").strip()
        setattr(
            fn,
            _COMMAND_ATTR,
            CommandSpec(
                name=name or fn.__name__,
                description=description or (doc.splitlines()[0] if doc else ""),
                attr=fn.__name__,
            ),
        )
        return fn

    return decorator


class CommandModule:
    """
    Base class for declaratively defined command modules.

    Subclasses set module_id and mark methods with @command. Each command
    method receives a CommandContext and returns a JSON-serialisable result.
    Modules are instantiated once by the registry and must not own a session.
    """

    module_id: ClassVar[str]
    description: ClassVar[str] = ""

    @classmethod
    def describe(cls) -> CommandModuleDescriptor:
        module_id = getattr(cls, "module_id", None)
        if not isinstance(module_id, str):
            raise TypeError(f"{cls.__qualname__} does not define module_id")
        validate_module_id(module_id)

        # walk base classes first so subclasses can override by name
        specs: dict[str, CommandSpec] = {}
        for klass in reversed(cls.__mro__):
            for value in vars(klass).values():
                spec = getattr(value, _COMMAND_ATTR, None)
                if isinstance(spec, CommandSpec):
                    specs[spec.name] = spec

        return CommandModuleDescriptor(
            module_type=cls,
            module_id=module_id,
            description=cls.description,
            commands=tuple(specs.values()),
        )
