"""Owner-only rebuild of the command registry from the modules on disk."""

from __future__ import annotations

import logging

from core.dispatcher import CommandContext
from core.models import Command

LOGGER = logging.getLogger(__name__)


async def reload_commands(context: CommandContext) -> None:
    registry = context.dispatcher.rebuild()
    LOGGER.info("Commands reloaded by %s", context.sender)
    await context.reply(f"Reloaded {len(registry)} commands.")


COMMAND = Command(
    name="reload",
    handler=reload_commands,
    owner_only=True,
    description="Reload command modules from disk.",
)
