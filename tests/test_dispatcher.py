from __future__ import annotations

import asyncio

import pytest

from core.config import DispatcherConfig, RateLimitConfig
from core.dispatcher import ECHO_FLAG, CommandDispatcher, DispatchStatus, Replies
from core.models import Command, ConnectionPhase
from core.rate_limiter import RateLimiter
from core.registry import CommandRegistry
from fakes import FakeSender, make_envelope


class Recorder:
    def __init__(self) -> None:
        self.calls: list = []

    async def __call__(self, context) -> None:
        self.calls.append(context)
        await context.reply("pong")


def _dispatcher(*commands: Command, sender=None, **config) -> tuple[CommandDispatcher, FakeSender]:
    sender = sender or FakeSender()
    dispatcher = CommandDispatcher(
        CommandRegistry(commands),
        sender,
        DispatcherConfig(**config),
        rate_limiter=RateLimiter(clock=lambda: 0.0),
    )
    return dispatcher, sender


def test_lookalike_marker_runs_command() -> None:
    handler = Recorder()
    dispatcher, sender = _dispatcher(Command(name="ping", handler=handler))

    status = asyncio.run(dispatcher.dispatch(make_envelope("．ping")))

    assert status is DispatchStatus.EXECUTED
    assert len(handler.calls) == 1
    assert sender.texts == ["pong"]
    recipient, _, quoted = sender.sent[0]
    assert recipient == "chat_id:100"
    assert quoted["key"]["id"] == 1


def test_command_name_is_case_insensitive_and_args_split() -> None:
    handler = Recorder()
    dispatcher, _ = _dispatcher(Command(name="ping", handler=handler))

    asyncio.run(dispatcher.dispatch(make_envelope(".PING  a  b")))

    context = handler.calls[0]
    assert len(handler.calls) == 1
    assert context.command_name == "ping"
    assert context.args == ["a", "b"]
    assert context.sender == "user:1"
    assert context.chat == "chat_id:100"


def test_self_authored_and_broadcast_messages_are_ignored() -> None:
    handler = Recorder()
    dispatcher, sender = _dispatcher(Command(name="ping", handler=handler))

    statuses = asyncio.run(
        dispatcher.dispatch_many(
            [
                make_envelope(".ping", from_me=True),
                make_envelope(".ping", chat="status@broadcast"),
                make_envelope(".ping", chat="12345@broadcast"),
                {"key": {"remoteJid": "chat_id:1", "broadcast": True}, "message": {"conversation": ".ping"}},
                {"key": {"remoteJid": "chat_id:1"}},
                {"message": {"conversation": ".ping"}},
            ]
        )
    )

    assert statuses == [DispatchStatus.IGNORED] * 6
    assert handler.calls == []
    assert sender.sent == []


def test_bare_marker_is_ignored() -> None:
    dispatcher, sender = _dispatcher()

    assert asyncio.run(dispatcher.dispatch(make_envelope(".   "))) is DispatchStatus.IGNORED
    assert sender.sent == []


def test_unknown_command_gets_reply() -> None:
    dispatcher, sender = _dispatcher()

    status = asyncio.run(dispatcher.dispatch(make_envelope(".help")))

    assert status is DispatchStatus.UNKNOWN
    assert sender.texts == ["Unknown command: help"]


def test_owner_only_command() -> None:
    handler = Recorder()
    command = Command(name="reload", handler=handler, owner_only=True)
    dispatcher, sender = _dispatcher(command, owners=frozenset({"user:owner"}))

    denied = asyncio.run(dispatcher.dispatch(make_envelope(".reload", sender="user:2")))
    allowed = asyncio.run(dispatcher.dispatch(make_envelope(".reload", sender="user:owner")))

    assert denied is DispatchStatus.DENIED_OWNER
    assert allowed is DispatchStatus.EXECUTED
    assert sender.texts == [Replies().owner_only, "pong"]
    assert len(handler.calls) == 1


def test_group_only_command() -> None:
    handler = Recorder()
    dispatcher, sender = _dispatcher(
        Command(name="kick", handler=handler, group_only=True),
        group_suffixes=("@g.us",),
    )

    private = asyncio.run(dispatcher.dispatch(make_envelope(".kick", is_group=False)))
    flagged = asyncio.run(dispatcher.dispatch(make_envelope(".kick", is_group=True)))
    suffixed = asyncio.run(dispatcher.dispatch(make_envelope(".kick", chat="123-456@g.us")))

    assert private is DispatchStatus.DENIED_GROUP
    assert flagged is DispatchStatus.EXECUTED
    assert suffixed is DispatchStatus.EXECUTED
    assert sender.texts[0] == Replies().group_only


def test_chat_suffix_means_nothing_without_configured_suffixes() -> None:
    dispatcher, _ = _dispatcher(Command(name="kick", handler=Recorder(), group_only=True))

    status = asyncio.run(dispatcher.dispatch(make_envelope(".kick", chat="123-456@g.us")))

    assert status is DispatchStatus.DENIED_GROUP


def test_rate_limit_allows_exactly_the_budget() -> None:
    handler = Recorder()
    dispatcher, sender = _dispatcher(
        Command(name="ping", handler=handler),
        rate_limit=RateLimitConfig(limit=20, window_seconds=300),
    )

    statuses = asyncio.run(
        dispatcher.dispatch_many([make_envelope(".ping", message_id=n) for n in range(25)])
    )

    assert statuses.count(DispatchStatus.EXECUTED) == 20
    assert statuses.count(DispatchStatus.THROTTLED) == 5
    assert statuses[20:] == [DispatchStatus.THROTTLED] * 5
    assert len(handler.calls) == 20
    assert sender.texts.count(Replies().throttled) == 5


def test_throttle_reply_can_be_silenced() -> None:
    dispatcher, sender = _dispatcher(
        Command(name="ping", handler=Recorder()),
        rate_limit=RateLimitConfig(limit=1, window_seconds=300),
        throttle_reply=False,
    )

    statuses = asyncio.run(dispatcher.dispatch_many([make_envelope(".ping"), make_envelope(".ping")]))

    assert statuses == [DispatchStatus.EXECUTED, DispatchStatus.THROTTLED]
    assert sender.texts == ["pong"]


def test_unknown_commands_do_not_consume_budget() -> None:
    handler = Recorder()
    dispatcher, _ = _dispatcher(
        Command(name="ping", handler=handler),
        rate_limit=RateLimitConfig(limit=1, window_seconds=300),
    )

    asyncio.run(dispatcher.dispatch_many([make_envelope(".nope"), make_envelope(".ping")]))

    assert len(handler.calls) == 1


def test_failing_handler_is_contained() -> None:
    async def _boom(context) -> None:
        raise ValueError("boom")

    handler = Recorder()
    dispatcher, sender = _dispatcher(Command(name="boom", handler=_boom), Command(name="ping", handler=handler))

    failed = asyncio.run(dispatcher.dispatch(make_envelope(".boom")))
    after = asyncio.run(dispatcher.dispatch(make_envelope(".ping")))

    assert failed is DispatchStatus.FAILED
    assert after is DispatchStatus.EXECUTED
    assert sender.texts == [Replies().command_error, "pong"]


def test_sync_handlers_are_supported() -> None:
    seen = []
    dispatcher, _ = _dispatcher(Command(name="sync", handler=lambda context: seen.append(context.args)))

    status = asyncio.run(dispatcher.dispatch(make_envelope(".sync 1")))

    assert status is DispatchStatus.EXECUTED
    assert seen == [["1"]]


def test_send_failures_do_not_escape() -> None:
    dispatcher, _ = _dispatcher(sender=FakeSender(fail=True))

    assert asyncio.run(dispatcher.dispatch(make_envelope(".nope"))) is DispatchStatus.UNKNOWN


def test_same_sender_keeps_arrival_order() -> None:
    order: list[str] = []

    async def _slow_first(context) -> None:
        if context.args[0] == "1":
            await asyncio.sleep(0.01)
        order.append(context.args[0])

    dispatcher, _ = _dispatcher(Command(name="seq", handler=_slow_first))

    asyncio.run(
        dispatcher.dispatch_many(
            [make_envelope(".seq 1"), make_envelope(".seq 2"), make_envelope(".seq 3")]
        )
    )

    assert order == ["1", "2", "3"]


def test_different_senders_run_concurrently() -> None:
    order: list[str] = []

    async def _handler(context) -> None:
        if context.sender == "user:slow":
            await asyncio.sleep(0.01)
        order.append(context.sender)

    dispatcher, _ = _dispatcher(Command(name="go", handler=_handler))

    asyncio.run(
        dispatcher.dispatch_many(
            [make_envelope(".go", sender="user:slow"), make_envelope(".go", sender="user:fast")]
        )
    )

    assert order == ["user:fast", "user:slow"]


def test_private_chat_without_participant_uses_chat_as_sender() -> None:
    handler = Recorder()
    dispatcher, _ = _dispatcher(Command(name="ping", handler=handler))

    asyncio.run(dispatcher.dispatch(make_envelope(".ping", sender=None, chat="chat_id:7")))

    assert handler.calls[0].sender == "chat_id:7"


def test_non_command_text_is_silent_by_default() -> None:
    dispatcher, sender = _dispatcher()

    status = asyncio.run(dispatcher.dispatch(make_envelope("hello there")))

    assert status is DispatchStatus.FALLBACK
    assert sender.sent == []


def test_echo_fallback_when_enabled() -> None:
    dispatcher, sender = _dispatcher(echo_default=True)

    asyncio.run(dispatcher.dispatch(make_envelope("hello there")))

    assert sender.texts == ["Echo: hello there"]


def test_custom_fallback_receives_context() -> None:
    seen = []

    async def _fallback(context) -> None:
        seen.append(context.text)

    dispatcher = CommandDispatcher(CommandRegistry(), FakeSender(), DispatcherConfig(), fallback=_fallback)

    asyncio.run(dispatcher.dispatch(make_envelope("just chatting")))

    assert seen == ["just chatting"]


def test_rebuild_swaps_registry() -> None:
    fresh = CommandRegistry([Command(name="new", handler=Recorder())])
    dispatcher = CommandDispatcher(
        CommandRegistry(),
        FakeSender(),
        DispatcherConfig(),
        registry_loader=lambda: fresh,
    )

    dispatcher.rebuild()

    assert dispatcher.registry is fresh
    assert asyncio.run(dispatcher.dispatch(make_envelope(".new"))) is DispatchStatus.EXECUTED


def test_rebuild_without_loader_fails() -> None:
    dispatcher, _ = _dispatcher()

    with pytest.raises(RuntimeError):
        dispatcher.rebuild()


def test_command_without_arguments_gets_empty_args() -> None:
    handler = Recorder()
    dispatcher, _ = _dispatcher(Command(name="ping", handler=handler))

    asyncio.run(dispatcher.dispatch(make_envelope(".ping", sender="user:anyone")))

    assert len(handler.calls) == 1
    assert handler.calls[0].args == []


def test_logout_resets_chat_flags_to_defaults() -> None:
    dispatcher, _ = _dispatcher(echo_default=False)
    dispatcher.chat_flags.set("chat_id:100", ECHO_FLAG, True)

    dispatcher.on_phase(ConnectionPhase.RECONNECTING, None)
    assert dispatcher.chat_flags.get("chat_id:100", ECHO_FLAG) is True

    dispatcher.on_phase(ConnectionPhase.LOGGED_OUT, None)
    assert dispatcher.chat_flags.get("chat_id:100", ECHO_FLAG) is False
