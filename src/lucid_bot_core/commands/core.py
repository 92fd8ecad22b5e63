"""
Built-in command module shipped with the bot core.

Entrypoint: lucid_bot_core.commands.core:CoreCommands
"""
from __future__ import annotations

from typing import Any

from lucid_bot_core.commands.base import CommandModule, command
from lucid_bot_core.commands.context import CommandContext
from lucid_bot_core.core.snapshots import now_iso8601


class CoreCommands(CommandModule):
    module_id = "core"
    description = "Bot health and identity"

    @command()
    def ping(self, ctx: CommandContext) -> dict[str, Any]:
        """Reply with pong and the server time."""
        return {"pong": True, "ts": now_iso8601()}

    @command(description="Show bot identity, version and command prefix")
    def info(self, ctx: CommandContext) -> dict[str, Any]:
        return {
            "bot_id": ctx.config.bot_id,
            "version": ctx.config.version,
            "prefix": ctx.config.prefix,
            "workspace_id": ctx.workspace_id,
        }
