from __future__ import annotations

import asyncio
from typing import Any, Optional

from telethon import errors

from adapters.telegram_socket import TelegramSocket
from core.config import LifecycleConfig
from core.lifecycle import ConnectionLifecycleManager
from core.models import ConnectionUpdate, LifecycleOutcome
from fakes import DummyMessage, MemoryStore


class FakeSession:
    def save(self) -> str:
        return "saved-session"


class FakeQR:
    def __init__(self, outcomes: list[Optional[BaseException]]) -> None:
        self.outcomes = list(outcomes)
        self.token = 1

    @property
    def url(self) -> str:
        return f"tg://login?token={self.token}"

    async def wait(self, timeout: Optional[float] = None) -> None:
        outcome = self.outcomes.pop(0)
        if outcome is not None:
            raise outcome

    async def recreate(self) -> None:
        self.token += 1


class FakeClient:
    def __init__(self, authorized: bool = True, qr: Optional[FakeQR] = None) -> None:
        self.authorized = authorized
        self.qr = qr
        self.session = FakeSession()
        self.string_session = None
        self.handlers: list[Any] = []
        self.sent: list[tuple[Any, str, Any]] = []
        self.passwords: list[str] = []
        self.disconnect_calls = 0
        self.disconnected: Optional[asyncio.Future] = None

    def __call__(self, string_session) -> "FakeClient":
        self.string_session = string_session
        return self

    async def connect(self) -> None:
        self.disconnected = asyncio.get_running_loop().create_future()

    def add_event_handler(self, callback, event) -> None:
        self.handlers.append(callback)

    async def is_user_authorized(self) -> bool:
        return self.authorized

    async def qr_login(self) -> FakeQR:
        return self.qr

    async def sign_in(self, password: str) -> None:
        self.passwords.append(password)

    async def send_message(self, entity, message: str, reply_to=None) -> None:
        self.sent.append((entity, message, reply_to))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnected is not None and not self.disconnected.done():
            self.disconnected.set_result(None)


class RecordingEvents:
    def __init__(self) -> None:
        self.updates: list[ConnectionUpdate] = []
        self.credentials: list[dict[str, Any]] = []
        self.messages: list[Any] = []

    async def connection_update(self, update: ConnectionUpdate) -> None:
        self.updates.append(update)

    async def credentials_update(self, partial) -> None:
        self.credentials.append(dict(partial))

    async def messages_upsert(self, envelopes) -> None:
        self.messages.extend(envelopes)


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


def _socket(client: FakeClient, password: Optional[str] = None) -> tuple[TelegramSocket, RecordingEvents]:
    events = RecordingEvents()
    state = {"credentials": {"me": "42"}, "keys": {}}
    return TelegramSocket(state, events, client, two_fa_password=password), events


def test_authorized_session_opens_immediately() -> None:
    client = FakeClient(authorized=True)
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        await socket.disconnect()

    asyncio.run(_run())

    assert events.credentials == [{"credentials": {"me": "42", "session": "saved-session"}}]
    assert events.updates == [ConnectionUpdate(connection="open")]
    assert client.disconnect_calls == 1


def test_qr_login_recreates_expired_token() -> None:
    client = FakeClient(authorized=False, qr=FakeQR([asyncio.TimeoutError(), None]))
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        await _settle()
        await socket.disconnect()

    asyncio.run(_run())

    assert [update.qr for update in events.updates[:2]] == ["tg://login?token=1", "tg://login?token=2"]
    assert events.updates[2:] == [ConnectionUpdate(connection="connecting"), ConnectionUpdate(connection="open")]
    assert events.credentials[-1]["credentials"]["session"] == "saved-session"


def test_missing_2fa_password_closes_as_logged_out() -> None:
    client = FakeClient(authorized=False, qr=FakeQR([errors.SessionPasswordNeededError(request=None)]))
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        await _settle()

    asyncio.run(_run())

    assert events.updates[-1].connection == "close"
    assert events.updates[-1].status_code == 401
    assert events.credentials == []


def test_2fa_password_is_used() -> None:
    client = FakeClient(authorized=False, qr=FakeQR([errors.SessionPasswordNeededError(request=None)]))
    socket, events = _socket(client, password="hunter2")

    async def _run() -> None:
        await socket.connect()
        await _settle()
        await socket.disconnect()

    asyncio.run(_run())

    assert client.passwords == ["hunter2"]
    assert events.updates[-1] == ConnectionUpdate(connection="open")


def test_revoked_session_maps_to_logged_out() -> None:
    client = FakeClient(authorized=True)
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        client.disconnected.set_exception(errors.AuthKeyUnregisteredError(request=None))
        await _settle()

    asyncio.run(_run())

    assert events.updates[-1].connection == "close"
    assert events.updates[-1].status_code == 401


def test_dropped_connection_maps_to_connection_lost() -> None:
    client = FakeClient(authorized=True)
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        client.disconnected.set_exception(ConnectionError("reset"))
        await _settle()

    asyncio.run(_run())

    assert events.updates[-1].status_code == 408


def test_deliberate_disconnect_emits_no_close() -> None:
    client = FakeClient(authorized=True)
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        await socket.disconnect()
        await _settle()

    asyncio.run(_run())

    assert [update.connection for update in events.updates] == ["open"]


def test_incoming_messages_become_envelopes() -> None:
    client = FakeClient(authorized=True)
    socket, events = _socket(client)

    class Event:
        message = DummyMessage(text=".ping", chat_id=100)

    async def _run() -> None:
        await socket.connect()
        await client.handlers[0](Event())
        await socket.disconnect()

    asyncio.run(_run())

    assert len(events.messages) == 1
    assert events.messages[0]["key"]["remoteJid"] == "chat_id:100"
    assert events.messages[0]["message"] == {"conversation": ".ping"}


def test_send_message_replies_to_quoted_envelope() -> None:
    client = FakeClient(authorized=True)
    socket, _ = _socket(client)
    quoted = {"key": {"remoteJid": "chat_id:100", "id": 7}}

    async def _run() -> None:
        await socket.send_message("chat_id:100", {"text": "pong"}, quoted)
        await socket.send_message("user:42", {"text": "hello"})

    asyncio.run(_run())

    assert client.sent == [(100, "pong", 7), (42, "hello", None)]


class UnreachableClient(FakeClient):
    async def qr_login(self) -> FakeQR:
        raise ConnectionError("network unreachable")


def test_network_error_during_qr_login_closes_the_attempt() -> None:
    client = UnreachableClient(authorized=False)
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        await _settle()

    asyncio.run(_run())

    assert events.updates[-1].connection == "close"
    assert events.updates[-1].status_code == 428
    assert "network unreachable" in events.updates[-1].error


def test_unexpected_2fa_failure_closes_the_attempt() -> None:
    class FloodedClient(FakeClient):
        async def sign_in(self, password: str) -> None:
            raise OSError("flood wait")

    client = FloodedClient(authorized=False, qr=FakeQR([errors.SessionPasswordNeededError(request=None)]))
    socket, events = _socket(client, password="hunter2")

    async def _run() -> None:
        await socket.connect()
        await _settle()

    asyncio.run(_run())

    assert events.updates[-1].connection == "close"
    assert events.updates[-1].status_code == 428


def test_manager_reconnects_after_qr_login_network_error() -> None:
    clients = [UnreachableClient(authorized=False), FakeClient(authorized=True)]
    sockets: list[TelegramSocket] = []

    def factory(state, socket_events) -> TelegramSocket:
        socket = TelegramSocket(state, socket_events, clients[len(sockets)])
        sockets.append(socket)
        return socket

    async def _no_wait(delay: float) -> None:
        await asyncio.sleep(0)

    manager = ConnectionLifecycleManager(
        "s1",
        MemoryStore(),
        factory,
        LifecycleConfig(challenge_timeout_seconds=0.05),
        sleep=_no_wait,
    )

    outcome = asyncio.run(asyncio.wait_for(manager.run(until_open=True), 5))

    assert outcome is LifecycleOutcome.OPENED
    assert len(sockets) == 2


def test_crash_after_qr_scan_still_reports_close() -> None:
    class BrokenSession:
        def save(self) -> str:
            raise RuntimeError("session not serializable")

    client = FakeClient(authorized=False, qr=FakeQR([None]))
    client.session = BrokenSession()
    socket, events = _socket(client)

    async def _run() -> None:
        await socket.connect()
        await _settle()

    asyncio.run(_run())

    assert events.updates[-1].connection == "close"
    assert events.updates[-1].status_code == 428
    assert events.credentials == []
