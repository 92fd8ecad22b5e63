from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

import pytest

from lucid_bot_core.commands.base import CommandModule, command
from lucid_bot_core.commands.core import CoreCommands
from lucid_bot_core.commands.permissions import PermissionOverlayBuilder
from lucid_bot_core.commands.registry import (
    CommandRegistry,
    RegistrationError,
    discover,
    register_all,
)
from lucid_bot_core.config import parse_config
from lucid_bot_core.events import HandlerError, InboundEvent
from lucid_bot_core.mqtt_topics import TopicSchema


class EchoCommands(CommandModule):
    module_id = "echo"

    @command()
    def say(self, ctx):
        return {"args": ctx.args, "argv": list(ctx.argv)}

    @command()
    def boom(self, ctx):
        raise RuntimeError("exploded")


def _overlay_from_call(call) -> dict[str, bool]:
    """Run the permissions callback a register_commands call received."""
    _, _, permissions = call.args
    builder = PermissionOverlayBuilder()
    permissions(builder)
    return dict(builder.build().entries)


@pytest.fixture
def session():
    s = MagicMock()
    s.topics = TopicSchema("test_bot")
    return s


def _published(session) -> list[tuple[str, dict]]:
    return [(c.args[0], json.loads(c.args[1])) for c in session.publish.call_args_list]


def test_two_workspaces_one_descriptor_registers_twice(session, bot_config):
    results = register_all(session, discover([CoreCommands]), bot_config)

    assert session.register_commands.call_count == 2
    first, second = session.register_commands.call_args_list
    assert first.args[1] == "ws1"
    assert _overlay_from_call(first) == {"A": True, "B": True}
    assert second.args[1] == "ws2"
    assert _overlay_from_call(second) == {"C": True}
    assert [r.ok for r in results] == [True, True]


@pytest.mark.parametrize("n_workspaces,m_modules", [(1, 1), (3, 2), (2, 0)])
def test_register_all_makes_n_times_m_calls(session, n_workspaces, m_modules):
    cfg = parse_config({
        "token": "t",
        "prefix": "!",
        "workspaces": {
            f"w{i}": {"workspace_id": f"ws{i}", "role_ids": [f"r{i}", f"s{i}"]} for i in range(n_workspaces)
        },
    })
    descriptors = discover([CoreCommands, EchoCommands][:m_modules])

    results = register_all(session, descriptors, cfg)

    assert session.register_commands.call_count == n_workspaces * m_modules
    assert len(results) == n_workspaces * m_modules
    for call in session.register_commands.call_args_list:
        ws = call.args[1]
        i = ws[len("ws"):]
        assert _overlay_from_call(call) == {f"r{i}": True, f"s{i}": True}


def test_one_failure_does_not_abort_the_rest(session, bot_config):
    calls = []

    def _register(descriptor, workspace_id, permissions):
        calls.append((descriptor.module_id, workspace_id))
        if (descriptor.module_id, workspace_id) == ("core", "ws1"):
            raise ConnectionResetError("platform said no")

    session.register_commands.side_effect = _register

    results = register_all(session, discover([CoreCommands, EchoCommands]), bot_config)

    assert len(calls) == 4
    failures = [r for r in results if not r.ok]
    assert len(failures) == 1
    err = failures[0].error
    assert isinstance(err, RegistrationError)
    assert (err.module_id, err.workspace_name, err.workspace_id) == ("core", "main", "ws1")
    assert isinstance(err.cause, ConnectionResetError)


def test_registry_load_surfaces_failures(session, bot_config, caplog):
    session.register_commands.side_effect = [None, RuntimeError("nope")]
    registry = CommandRegistry(session, bot_config, [CoreCommands])

    results = registry.load()

    assert len(results) == 2
    assert len(registry.failures) == 1
    assert "1 of 2 failed" in caplog.text
    # only the successful pair grants access
    assert registry.is_allowed("core", "ws1", ["A"])
    assert not registry.is_allowed("core", "ws2", ["C"])


def test_load_twice_converges(session, bot_config):
    registry = CommandRegistry(session, bot_config, [CoreCommands])
    registry.load()
    registry.load()

    calls = session.register_commands.call_args_list
    assert len(calls) == 4
    assert [c.args[1] for c in calls[:2]] == [c.args[1] for c in calls[2:]]
    assert [_overlay_from_call(c) for c in calls[:2]] == [_overlay_from_call(c) for c in calls[2:]]
    assert len(registry.results) == 2


def _event(category: str, workspace_id: str, payload: dict) -> InboundEvent:
    topics = TopicSchema("test_bot")
    return InboundEvent(
        category=category,
        workspace_id=workspace_id,
        topic=topics.workspace_event(workspace_id, category),
        payload=json.dumps(payload),
    )


@pytest.fixture
def loaded(session, bot_config):
    registry = CommandRegistry(session, bot_config, [CoreCommands, EchoCommands])
    registry.load()
    return registry


def test_command_event_runs_when_role_allowed(loaded, session):
    loaded.handle_command(_event("command", "ws1", {
        "request_id": "r1", "module": "echo", "command": "say", "args": {"x": 1}, "roles": ["B"],
    }))

    [(topic, payload)] = _published(session)
    assert topic == "lucid/bots/test_bot/workspaces/ws1/evt/command/result"
    assert payload["ok"] is True
    assert payload["request_id"] == "r1"
    assert payload["result"] == {"args": {"x": 1}, "argv": []}


def test_command_event_denied_for_role_of_other_workspace(loaded, session, caplog):
    caplog.set_level(logging.INFO)
    loaded.handle_command(_event("command", "ws2", {
        "request_id": "r2", "module": "echo", "command": "say", "roles": ["A"],
    }))

    [(_, payload)] = _published(session)
    assert payload["ok"] is False
    assert payload["error"] == "forbidden"
    assert "workspace dev (ws2)" in caplog.text


def test_command_event_unknown_command(loaded, session):
    loaded.handle_command(_event("command", "ws1", {
        "module": "echo", "command": "missing", "roles": ["A"],
    }))

    [(_, payload)] = _published(session)
    assert payload["error"] == "unknown command"


def test_command_event_failure_is_reported(loaded, session):
    loaded.handle_command(_event("command", "ws1", {
        "module": "echo", "command": "boom", "roles": ["A"],
    }))

    [(_, payload)] = _published(session)
    assert payload["ok"] is False
    assert payload["error"] == "exploded"


def test_command_event_malformed_payload_raises_handler_error(loaded):
    bad = InboundEvent(category="command", workspace_id="ws1", topic="t", payload="{oops")
    with pytest.raises(HandlerError):
        loaded.handle_command(bad)
    with pytest.raises(HandlerError):
        loaded.handle_command(_event("command", "ws1", {"module": "echo"}))


def test_prefixed_message_runs_command(loaded, session):
    loaded.handle_message(_event("message_created", "ws2", {
        "content": '!echo.say hello "big world"', "roles": ["C"], "message_id": "m1",
    }))

    [(_, payload)] = _published(session)
    assert payload["ok"] is True
    assert payload["request_id"] == "m1"
    assert payload["result"]["argv"] == ["hello", "big world"]


def test_prefixed_message_bare_name_resolves_first_module(loaded, session, bot_config):
    loaded.handle_message(_event("message_created", "ws1", {"content": "!info", "roles": ["A"]}))

    [(_, payload)] = _published(session)
    assert payload["module"] == "core"
    assert payload["result"]["prefix"] == bot_config.prefix


@pytest.mark.parametrize("content", ["hello there", "!", "!nosuchcommand", ""])
def test_other_messages_are_ignored(loaded, session, content):
    loaded.handle_message(_event("message_created", "ws1", {"content": content, "roles": ["A"]}))
    session.publish.assert_not_called()


def test_clear_releases_state(loaded):
    loaded.clear()
    assert loaded.descriptors == []
    assert loaded.results == []
    assert not loaded.is_allowed("core", "ws1", ["A"])
