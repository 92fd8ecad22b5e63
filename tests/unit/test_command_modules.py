from __future__ import annotations

import pytest

from lucid_bot_core.commands.base import CommandModule, command
from lucid_bot_core.commands.catalog import COMMAND_MODULES
from lucid_bot_core.commands.core import CoreCommands
from lucid_bot_core.commands.permissions import PermissionOverlayBuilder
from lucid_bot_core.commands.registry import discover
from lucid_bot_core.mqtt_topics import TopicSchemaError


class AdminCommands(CommandModule):
    module_id = "admin"
    description = "Moderation"

    @command()
    def kick(self, ctx):
        """Remove a member."""
        return "kicked"

    @command("ban-user", description="Ban a member")
    def ban(self, ctx):
        return "banned"

    def helper(self):
        return None


class ExtendedAdmin(AdminCommands):
    module_id = "admin_ext"

    @command()
    def kick(self, ctx):
        return "kicked harder"


class NoId(CommandModule):
    pass


def test_describe_collects_commands_in_declaration_order():
    d = AdminCommands.describe()
    assert d.module_type is AdminCommands
    assert d.module_id == "admin"
    assert [c.name for c in d.commands] == ["kick", "ban-user"]
    assert d.command("kick").description == "Remove a member."
    assert d.command("ban-user").attr == "ban"
    assert d.command("helper") is None


def test_describe_subclass_overrides_by_name():
    d = ExtendedAdmin.describe()
    assert d.module_id == "admin_ext"
    assert [c.name for c in d.commands] == ["kick", "ban-user"]


def test_describe_requires_valid_module_id():
    with pytest.raises(TypeError):
        NoId.describe()

    class Bad(CommandModule):
        module_id = "Bad Id"

    with pytest.raises(TopicSchemaError):
        Bad.describe()


def test_manifest_shape():
    manifest = AdminCommands.describe().to_manifest()
    assert manifest == {
        "module": "admin",
        "description": "Moderation",
        "commands": [
            {"name": "kick", "description": "Remove a member."},
            {"name": "ban-user", "description": "Ban a member"},
        ],
    }


def test_discover_is_order_stable_and_dedupes_by_type():
    descriptors = discover([AdminCommands, CoreCommands, AdminCommands])
    assert [d.module_type for d in descriptors] == [AdminCommands, CoreCommands]


def test_discover_empty_set_is_valid():
    assert discover([]) == []


def test_default_catalog_contains_core_module():
    assert CoreCommands in COMMAND_MODULES
    assert [c.name for c in CoreCommands.describe().commands] == ["ping", "info"]


def test_overlay_builder_is_additive_and_ordered():
    overlay = PermissionOverlayBuilder().add_role("B").add_role(7).add_role("B", True).build()
    assert overlay.entries == (("B", True), ("7", True))
    assert overlay.role_ids == ("B", "7")
    assert overlay.allows("7")
    assert not overlay.allows("C")
    assert overlay.to_payload() == [{"role_id": "B", "allow": True}, {"role_id": "7", "allow": True}]


def test_overlay_builder_rejects_deny_entries():
    with pytest.raises(ValueError):
        PermissionOverlayBuilder().add_role("A", allow=False)
