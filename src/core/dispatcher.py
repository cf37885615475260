"""Command dispatch pipeline.

The pipeline enforces a strict order for every envelope:
1) Drop self-authored, broadcast, and body-less envelopes
2) Extract user-visible text
3) Normalize the command marker; non-commands go to the fallback hook
4) Resolve the command (unknown -> reply)
5) Owner/group authorization (denied -> reply)
6) Per-sender rate limiting (throttled -> reply or drop)
7) Run the handler inside an isolating boundary

Everything below step 7 is contained: a failing handler produces one error
reply and never takes the dispatcher down.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from core.awaitables import maybe_await
from core.config import DispatcherConfig
from core.models import Challenge, ConnectionPhase, Envelope
from core.ports import MessageSenderPort
from core.prefix import PrefixNormalizer
from core.rate_limiter import RateLimiter
from core.registry import CommandRegistry
from core.text_extractor import extract_text

LOGGER = logging.getLogger(__name__)

ECHO_FLAG = "echo"


class DispatchStatus(str, Enum):
    IGNORED = "ignored"
    FALLBACK = "fallback"
    UNKNOWN = "unknown"
    DENIED_OWNER = "denied_owner"
    DENIED_GROUP = "denied_group"
    THROTTLED = "throttled"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass(frozen=True)
class Replies:
    """User-facing reply texts."""

    unknown_command: str = "Unknown command: {name}"
    owner_only: str = "❌ Owner-only command."
    group_only: str = "❌ This command works only in groups."
    throttled: str = "⏳ Too many commands, slow down a little."
    command_error: str = "⚠️ Command failed. Please try again later."
    echo: str = "Echo: {text}"


class ChatFlags:
    """Per-chat boolean toggles owned by one dispatcher."""

    def __init__(self, defaults: Optional[Mapping[str, bool]] = None) -> None:
        self._defaults = dict(defaults or {})
        self._flags: dict[str, dict[str, bool]] = {}

    def get(self, chat: str, flag: str) -> bool:
        chat_flags = self._flags.get(chat, {})
        if flag in chat_flags:
            return chat_flags[flag]
        return self._defaults.get(flag, False)

    def set(self, chat: str, flag: str, value: bool) -> None:
        self._flags.setdefault(chat, {})[flag] = bool(value)

    def clear(self) -> None:
        self._flags.clear()


@dataclass
class CommandContext:
    """Everything a handler needs about one invocation."""

    envelope: Envelope
    text: str
    command_name: str
    args: list[str]
    sender: str
    chat: str
    is_group: bool
    is_owner: bool
    dispatcher: "CommandDispatcher" = field(repr=False)

    async def reply(self, text: str) -> None:
        await self.dispatcher.send_text(self.chat, text, quoted=self.envelope)

    async def send(self, recipient: str, content: Mapping[str, Any]) -> None:
        await self.dispatcher.sender.send_message(recipient, content)


Fallback = Callable[[CommandContext], Awaitable[Any]]


def _key_field(envelope: Envelope, name: str) -> Any:
    key = envelope.get("key") if isinstance(envelope, Mapping) else None
    if not isinstance(key, Mapping):
        return None
    return key.get(name)


class CommandDispatcher:
    """Routes inbound envelopes to registered command handlers."""

    def __init__(
        self,
        registry: CommandRegistry,
        sender: MessageSenderPort,
        config: DispatcherConfig,
        rate_limiter: Optional[RateLimiter] = None,
        replies: Replies = Replies(),
        fallback: Optional[Fallback] = None,
        registry_loader: Optional[Callable[[], CommandRegistry]] = None,
    ) -> None:
        self._registry = registry
        self.sender = sender
        self.config = config
        self.replies = replies
        self.normalizer = PrefixNormalizer(config.marker, config.lookalikes)
        self.chat_flags = ChatFlags({ECHO_FLAG: config.echo_default})
        self._limiter = rate_limiter or RateLimiter()
        self._fallback = fallback or self._echo_fallback
        self._registry_loader = registry_loader
        self._sender_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def registry(self) -> CommandRegistry:
        return self._registry

    @property
    def marker(self) -> str:
        return self.normalizer.marker

    def swap_registry(self, registry: CommandRegistry) -> None:
        """Replace the whole registry; in-flight dispatches keep the old one."""

        self._registry = registry

    def rebuild(self) -> CommandRegistry:
        """Build a fresh registry with the configured loader and swap it in."""

        if self._registry_loader is None:
            raise RuntimeError("No registry loader configured for rebuild")
        registry = self._registry_loader()
        self.swap_registry(registry)
        LOGGER.info("Command registry rebuilt with %s commands", len(registry))
        return registry

    def on_phase(self, phase: ConnectionPhase, challenge: Optional[Challenge] = None) -> None:
        """Phase listener: a logged-out session starts over with default chat flags."""

        if phase is ConnectionPhase.LOGGED_OUT:
            self.chat_flags.clear()
            LOGGER.info("Chat flags reset after logout")

    def is_owner(self, sender: str) -> bool:
        return sender in self.config.owners

    def is_group(self, envelope: Envelope, chat: str) -> bool:
        flag = _key_field(envelope, "isGroup")
        if isinstance(flag, bool):
            return flag
        return any(chat.endswith(suffix) for suffix in self.config.group_suffixes)

    async def send_text(self, chat: str, text: str, quoted: Optional[Envelope] = None) -> None:
        """Send a text reply, logging instead of raising on delivery failure."""

        try:
            await self.sender.send_message(chat, {"text": text}, quoted=quoted)
        except Exception:
            LOGGER.exception("Failed to send reply to %s", chat)

    async def dispatch_many(self, envelopes: Sequence[Envelope]) -> list[DispatchStatus]:
        """Dispatch a batch; same-sender envelopes keep their arrival order."""

        results = await asyncio.gather(
            *(self.dispatch(envelope) for envelope in envelopes),
            return_exceptions=True,
        )
        statuses: list[DispatchStatus] = []
        for result in results:
            if isinstance(result, BaseException):
                LOGGER.error("Dispatch crashed", exc_info=result)
                statuses.append(DispatchStatus.FAILED)
            else:
                statuses.append(result)
        return statuses

    async def dispatch(self, envelope: Envelope) -> DispatchStatus:
        """Run one envelope through the pipeline and report what happened."""

        if not isinstance(envelope, Mapping) or not envelope.get("message"):
            return DispatchStatus.IGNORED
        if _key_field(envelope, "fromMe"):
            return DispatchStatus.IGNORED
        chat = _key_field(envelope, "remoteJid")
        if not isinstance(chat, str) or not chat:
            return DispatchStatus.IGNORED
        if _key_field(envelope, "broadcast") or chat.endswith("@broadcast"):
            return DispatchStatus.IGNORED

        participant = _key_field(envelope, "participant")
        sender = participant if isinstance(participant, str) and participant else chat

        # Taken before any await so one sender's envelopes run in arrival order.
        lock = self._sender_locks.get(sender)
        if lock is None:
            lock = asyncio.Lock()
            self._sender_locks[sender] = lock
        async with lock:
            return await self._dispatch_locked(envelope, chat, sender)

    async def _dispatch_locked(self, envelope: Envelope, chat: str, sender: str) -> DispatchStatus:
        text = extract_text(envelope)
        if not text:
            return DispatchStatus.IGNORED

        registry = self._registry
        is_group = self.is_group(envelope, chat)
        is_owner = self.is_owner(sender)

        normalized = self.normalizer.apply(text)
        if not self.normalizer.is_command(normalized):
            context = CommandContext(
                envelope=envelope,
                text=text,
                command_name="",
                args=[],
                sender=sender,
                chat=chat,
                is_group=is_group,
                is_owner=is_owner,
                dispatcher=self,
            )
            try:
                await self._fallback(context)
            except Exception:
                LOGGER.exception("Fallback handler failed for %s", chat)
            return DispatchStatus.FALLBACK

        parts = normalized[len(self.marker):].split()
        if not parts:
            return DispatchStatus.IGNORED
        command_name, args = parts[0].lower(), parts[1:]

        command = registry.resolve(command_name)
        if command is None:
            await self.send_text(chat, self.replies.unknown_command.format(name=command_name), quoted=envelope)
            return DispatchStatus.UNKNOWN

        if command.owner_only and not is_owner:
            await self.send_text(chat, self.replies.owner_only, quoted=envelope)
            return DispatchStatus.DENIED_OWNER
        if command.group_only and not is_group:
            await self.send_text(chat, self.replies.group_only, quoted=envelope)
            return DispatchStatus.DENIED_GROUP

        rate = self.config.rate_limit
        if not self._limiter.allow(sender, rate.limit, rate.window_seconds):
            LOGGER.info("Throttled %s on %s", sender, command_name)
            if self.config.throttle_reply:
                await self.send_text(chat, self.replies.throttled, quoted=envelope)
            return DispatchStatus.THROTTLED

        context = CommandContext(
            envelope=envelope,
            text=text,
            command_name=command_name,
            args=args,
            sender=sender,
            chat=chat,
            is_group=is_group,
            is_owner=is_owner,
            dispatcher=self,
        )
        try:
            await maybe_await(command.handler(context))
        except Exception:
            LOGGER.exception("Command %s failed for %s", command.name, sender)
            await self.send_text(chat, self.replies.command_error, quoted=envelope)
            return DispatchStatus.FAILED

        LOGGER.info("Command %s handled for %s", command.name, sender)
        return DispatchStatus.EXECUTED

    async def _echo_fallback(self, context: CommandContext) -> None:
        if self.chat_flags.get(context.chat, ECHO_FLAG):
            await context.reply(self.replies.echo.format(text=context.text))
