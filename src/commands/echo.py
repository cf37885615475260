"""Per-chat switch for echoing plain, non-command messages."""

from __future__ import annotations

from core.dispatcher import ECHO_FLAG, CommandContext
from core.models import Command

_STATES = {"on": True, "off": False}


async def toggle_echo(context: CommandContext) -> None:
    flags = context.dispatcher.chat_flags
    if not context.args:
        state = "on" if flags.get(context.chat, ECHO_FLAG) else "off"
        await context.reply(f"Echo is {state}. Use echo on|off.")
        return

    choice = context.args[0].lower()
    if choice not in _STATES:
        await context.reply("Usage: echo on|off")
        return
    flags.set(context.chat, ECHO_FLAG, _STATES[choice])
    await context.reply(f"Echo turned {choice}.")


COMMAND = Command(
    name="echo",
    handler=toggle_echo,
    description="Toggle echoing of plain messages in this chat.",
)
