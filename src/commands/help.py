"""Lists the loaded commands with their aliases and restrictions."""

from __future__ import annotations

from typing import Iterable

from core.dispatcher import CommandContext
from core.models import Command


def format_help(commands: Iterable[Command], marker: str) -> str:
    """One line per command, sorted by name, with aliases and description."""

    lines = [f"Commands (prefix: {marker})"]
    for command in sorted(commands, key=lambda item: item.name):
        line = f"{marker}{command.name}"
        if command.aliases:
            line += " (" + ", ".join(sorted(command.aliases)) + ")"
        if command.owner_only:
            line += " [owner]"
        if command.group_only:
            line += " [group]"
        if command.description:
            line += f" - {command.description}"
        lines.append(line)
    return "\n".join(lines)


async def show_help(context: CommandContext) -> None:
    dispatcher = context.dispatcher
    await context.reply(format_help(dispatcher.registry.commands(), dispatcher.marker))


COMMAND = Command(
    name="help",
    handler=show_help,
    aliases={"h", "commands"},
    description="List available commands.",
)
