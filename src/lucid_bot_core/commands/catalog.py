"""
The closed set of command modules known to this build.

Add a module class here to have it registered in every configured workspace.
Order is registration order.
"""
from __future__ import annotations

from lucid_bot_core.commands.base import CommandModule
from lucid_bot_core.commands.core import CoreCommands

COMMAND_MODULES: tuple[type[CommandModule], ...] = (
    CoreCommands,
)
