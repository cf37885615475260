"""Liveness check that reports delivery latency when the message has a timestamp."""

from __future__ import annotations

import time

from core.dispatcher import CommandContext
from core.models import Command


async def ping(context: CommandContext) -> None:
    sent_at = context.envelope.get("messageTimestamp")
    try:
        latency_ms = max(0, int((time.time() - float(sent_at)) * 1000))
    except (TypeError, ValueError):
        await context.reply("Pong!")
        return
    await context.reply(f"Pong! {latency_ms} ms")


COMMAND = Command(
    name="ping",
    handler=ping,
    aliases={"p"},
    description="Check that the bot is alive.",
)
