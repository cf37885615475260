"""Telethon-backed socket adapter.

Wraps one TelegramClient per connection attempt and translates Telethon's
login flow, disconnects and new messages into the core's socket events.
Auth state carries the Telethon StringSession under
``state["credentials"]["session"]``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional

from telethon import TelegramClient, errors, events
from telethon.sessions import StringSession

from adapters.telegram_mapper import build_envelope, parse_peer_key
from core.models import CREDENTIALS_KEY, AuthState, ConnectionUpdate, DisconnectReason, Envelope
from core.ports import SocketEvents

LOGGER = logging.getLogger(__name__)

SESSION_FIELD = "session"

# Errors after which the stored session can never be used again.
_LOGGED_OUT_ERRORS = (
    errors.AuthKeyUnregisteredError,
    errors.SessionRevokedError,
    errors.SessionExpiredError,
    errors.UserDeactivatedError,
    errors.AuthKeyDuplicatedError,
)

ClientFactory = Callable[[StringSession], TelegramClient]


class TelegramSocket:
    """SocketPort implementation over a Telethon user client."""

    def __init__(
        self,
        state: AuthState,
        socket_events: SocketEvents,
        client_factory: ClientFactory,
        two_fa_password: Optional[str] = None,
    ) -> None:
        self._state = state
        self._events = socket_events
        credentials = state.get(CREDENTIALS_KEY) or {}
        self._client = client_factory(StringSession(credentials.get(SESSION_FIELD) or None))
        self._password = two_fa_password
        self._tasks: list[asyncio.Task] = []
        self._closing = False

    async def connect(self) -> None:
        await self._client.connect()
        self._client.add_event_handler(self._on_new_message, events.NewMessage(incoming=True))
        if await self._client.is_user_authorized():
            await self._opened()
            return
        LOGGER.info("Telegram session is not authorized; starting QR login")
        self._spawn(self._qr_login())

    async def disconnect(self) -> None:
        self._closing = True
        for task in self._tasks:
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()
        await self._client.disconnect()

    async def send_message(
        self, recipient: str, content: Mapping[str, Any], quoted: Optional[Envelope] = None
    ) -> None:
        reply_to = None
        if quoted is not None:
            key = quoted.get("key") or {}
            reply_to = key.get("id")
        entity = parse_peer_key(recipient)
        await self._client.send_message(entity, str(content.get("text", "")), reply_to=reply_to)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._on_task_done)
        self._tasks.append(task)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        LOGGER.error("Telegram socket task failed", exc_info=exc)
        if not self._closing:
            asyncio.ensure_future(self._close(DisconnectReason.CONNECTION_CLOSED, str(exc)))

    async def _opened(self) -> None:
        credentials = dict(self._state.get(CREDENTIALS_KEY) or {})
        credentials[SESSION_FIELD] = self._client.session.save()
        await self._events.credentials_update({CREDENTIALS_KEY: credentials})
        await self._events.connection_update(ConnectionUpdate(connection="open"))
        self._spawn(self._watch_disconnect())

    async def _close(self, status: DisconnectReason, error: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        await self._events.connection_update(
            ConnectionUpdate(connection="close", status_code=int(status), error=error)
        )

    async def _qr_login(self) -> None:
        try:
            qr = await self._client.qr_login()
            while True:
                await self._events.connection_update(ConnectionUpdate(qr=qr.url))
                try:
                    # Waits until the token expires, then a fresh one is shown.
                    await qr.wait()
                    break
                except asyncio.TimeoutError:
                    await qr.recreate()
        except errors.SessionPasswordNeededError:
            if not await self._sign_in_with_password():
                return
        except errors.RPCError as exc:
            LOGGER.warning("QR login failed: %s", exc)
            await self._close(DisconnectReason.CONNECTION_CLOSED, str(exc))
            return
        except Exception as exc:
            LOGGER.warning("QR login aborted: %s", exc)
            await self._close(DisconnectReason.CONNECTION_CLOSED, str(exc))
            return

        await self._events.connection_update(ConnectionUpdate(connection="connecting"))
        await self._opened()

    async def _sign_in_with_password(self) -> bool:
        if not self._password:
            LOGGER.error("Account requires a 2FA password; set the 2FA environment variable")
            await self._close(DisconnectReason.LOGGED_OUT, "2FA password required")
            return False
        try:
            await self._client.sign_in(password=self._password)
        except errors.PasswordHashInvalidError:
            LOGGER.error("2FA password was rejected")
            await self._close(DisconnectReason.LOGGED_OUT, "2FA password rejected")
            return False
        except Exception as exc:
            LOGGER.warning("2FA sign-in failed: %s", exc)
            await self._close(DisconnectReason.CONNECTION_CLOSED, str(exc))
            return False
        return True

    async def _watch_disconnect(self) -> None:
        try:
            await self._client.disconnected
            status = DisconnectReason.CONNECTION_LOST
            error = None
        except _LOGGED_OUT_ERRORS as exc:
            status = DisconnectReason.LOGGED_OUT
            error = str(exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            status = DisconnectReason.CONNECTION_LOST
            error = str(exc)
        await self._close(status, error)

    async def _on_new_message(self, event) -> None:
        try:
            envelope = build_envelope(event.message)
        except Exception:
            LOGGER.exception("Failed to map incoming message")
            return
        await self._events.messages_upsert([envelope])
