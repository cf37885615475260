"""Connection lifecycle state machine for one session.

Phases: INIT -> CONNECTING -> (AWAITING_CHALLENGE) -> OPEN -> CLOSING ->
RECONNECTING (back to INIT after a delay) or LOGGED_OUT (terminal).

The manager owns the session's auth state for the duration of an attempt.
Socket adapters report back through ``connection_update``,
``credentials_update`` and ``messages_upsert``; the manager is also the
outbound sender for the dispatcher, forwarding to whichever socket is live.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from core.auth_state import Bootstrap, NormalizedAuth, bootstrap_auth, store_bootstrap
from core.awaitables import maybe_await
from core.config import LifecycleConfig
from core.errors import SocketNotReadyError
from core.models import (
    Challenge,
    ConnectionPhase,
    ConnectionUpdate,
    DisconnectReason,
    Envelope,
    LifecycleOutcome,
    LogoutPolicy,
)
from core.ports import CredentialStorePort, SocketFactory, SocketPort

LOGGER = logging.getLogger(__name__)

PhaseListener = Callable[[ConnectionPhase, Optional[Challenge]], Any]
ChallengeRenderer = Callable[[Challenge], Any]
MessageHandler = Callable[[Sequence[Envelope]], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class _AttemptResult:
    kind: str
    status_code: Optional[int] = None


class ConnectionLifecycleManager:
    """Drives connect/challenge/open/close/reconnect for a single session."""

    def __init__(
        self,
        session_id: str,
        store: CredentialStorePort,
        socket_factory: SocketFactory,
        config: LifecycleConfig = LifecycleConfig(),
        *,
        fallback_store: Optional[CredentialStorePort] = None,
        bootstrap: Optional[Bootstrap] = None,
        message_handler: Optional[MessageHandler] = None,
        challenge_renderer: Optional[ChallengeRenderer] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._fallback_store = fallback_store or store
        self._bootstrap = bootstrap or store_bootstrap(store, session_id)
        self._socket_factory = socket_factory
        self._config = config
        self._message_handler = message_handler
        self._render_challenge = challenge_renderer
        self._sleep = sleep

        self._phase = ConnectionPhase.INIT
        self._listeners: list[PhaseListener] = []
        self._auth: Optional[NormalizedAuth] = None
        self._socket: Optional[SocketPort] = None
        self._attempt: Optional[asyncio.Future] = None
        self._challenge: Optional[Challenge] = None
        self._challenge_timer: Optional[asyncio.Task] = None
        self._pairing_requested = False
        self._until_open = False
        self._stop_requested = False
        self._failures = 0
        self.attempts = 0

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def challenge(self) -> Optional[Challenge]:
        return self._challenge

    @property
    def auth(self) -> Optional[NormalizedAuth]:
        return self._auth

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def add_phase_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    def _set_phase(self, phase: ConnectionPhase) -> None:
        if phase is self._phase and phase is not ConnectionPhase.AWAITING_CHALLENGE:
            return
        LOGGER.info("Session %s: %s -> %s", self.session_id, self._phase.value, phase.value)
        self._phase = phase
        for listener in list(self._listeners):
            try:
                listener(phase, self._challenge)
            except Exception:
                LOGGER.exception("Phase listener failed on %s", phase.value)

    async def run(self, until_open: bool = False) -> LifecycleOutcome:
        """Run attempts until a terminal outcome.

        With ``until_open`` the first successful open ends the run (used by
        the login command); otherwise the manager keeps reconnecting until a
        logout, a challenge timeout, or ``stop()``.
        """

        self._until_open = until_open
        self._stop_requested = False
        loop = asyncio.get_running_loop()

        while True:
            self._set_phase(ConnectionPhase.INIT)
            self._auth = await bootstrap_auth(
                self._bootstrap,
                fallback_store=self._fallback_store,
                session_id=self.session_id,
            )
            if self._stop_requested:
                return LifecycleOutcome.STOPPED

            self._attempt = loop.create_future()
            self._pairing_requested = False
            self.attempts += 1
            self._set_phase(ConnectionPhase.CONNECTING)
            self._socket = self._socket_factory(self._auth.state, self)
            try:
                await self._socket.connect()
            except Exception as exc:
                LOGGER.warning("Socket connect failed for %s: %s", self.session_id, exc)
                self._set_phase(ConnectionPhase.CLOSING)
                self._resolve_attempt(
                    _AttemptResult("closed", int(DisconnectReason.CONNECTION_CLOSED))
                )

            result = await self._attempt
            self._stop_challenge_timer()
            self._challenge = None

            if result.kind == "opened":
                await self._release_socket()
                return LifecycleOutcome.OPENED
            if result.kind == "stopped":
                await self._release_socket()
                return LifecycleOutcome.STOPPED
            if result.kind == "timeout":
                self._set_phase(ConnectionPhase.CLOSING)
                await self._release_socket()
                return LifecycleOutcome.CHALLENGE_TIMEOUT

            if result.status_code in self._config.logout_status_codes:
                LOGGER.warning("Session %s logged out (status %s)", self.session_id, result.status_code)
                self._set_phase(ConnectionPhase.LOGGED_OUT)
                await self._release_socket()
                await self._apply_logout_policy()
                return LifecycleOutcome.LOGGED_OUT

            self._set_phase(ConnectionPhase.RECONNECTING)
            await self._release_socket()
            delay = self._next_delay()
            self._failures += 1
            LOGGER.info(
                "Session %s closed (status %s); reconnecting in %.1fs",
                self.session_id,
                result.status_code,
                delay,
            )
            await self._sleep(delay)
            if self._stop_requested:
                return LifecycleOutcome.STOPPED

    def stop(self) -> None:
        """Ask ``run`` to finish with STOPPED at the next opportunity."""

        self._stop_requested = True
        self._resolve_attempt(_AttemptResult("stopped"))

    async def connection_update(self, update: ConnectionUpdate) -> None:
        """Apply one connection event from the live socket."""

        if self._attempt is None or self._attempt.done():
            LOGGER.debug("Ignoring connection update outside an attempt: %s", update)
            return

        if update.qr or update.pairing_code:
            await self._on_challenge(update)

        if update.connection == "connecting":
            if self._phase is ConnectionPhase.AWAITING_CHALLENGE:
                self._stop_challenge_timer()
                self._challenge = None
                self._set_phase(ConnectionPhase.CONNECTING)
        elif update.connection == "open":
            await self._on_open()
        elif update.connection == "close":
            self._stop_challenge_timer()
            self._challenge = None
            self._set_phase(ConnectionPhase.CLOSING)
            self._resolve_attempt(_AttemptResult("closed", update.status_code))

    async def credentials_update(self, partial: Mapping[str, Any]) -> None:
        """Merge a partial auth update; failures are logged, never raised."""

        if self._auth is None:
            LOGGER.warning("Credential update before auth state was loaded; dropped")
            return
        try:
            await self._auth.merge(partial)
        except Exception:
            LOGGER.exception("Failed to persist credential update for %s", self.session_id)

    async def messages_upsert(self, envelopes: Sequence[Envelope]) -> None:
        if self._message_handler is None:
            return
        try:
            await self._message_handler(envelopes)
        except Exception:
            LOGGER.exception("Message handler failed")

    async def send_message(
        self, recipient: str, content: Mapping[str, Any], quoted: Optional[Envelope] = None
    ) -> None:
        if self._socket is None or self._phase is not ConnectionPhase.OPEN:
            raise SocketNotReadyError(f"Session {self.session_id} is not open")
        await self._socket.send_message(recipient, content, quoted)

    async def _on_challenge(self, update: ConnectionUpdate) -> None:
        if self._phase not in (ConnectionPhase.CONNECTING, ConnectionPhase.AWAITING_CHALLENGE):
            return
        self._challenge = Challenge(qr=update.qr, pairing_code=update.pairing_code)
        self._set_phase(ConnectionPhase.AWAITING_CHALLENGE)
        self._render(self._challenge)
        if self._challenge_timer is None:
            self._challenge_timer = asyncio.ensure_future(self._expire_challenge())
        if update.qr and not update.pairing_code:
            await self._request_pairing_code()

    async def _request_pairing_code(self) -> None:
        phone = self._config.pairing_phone
        request = getattr(self._socket, "request_pairing_code", None)
        if not phone or not callable(request) or self._pairing_requested:
            return
        self._pairing_requested = True
        try:
            code = await maybe_await(request(phone))
        except Exception as exc:
            LOGGER.warning("Pairing code request failed: %s", exc)
            return
        if isinstance(code, Mapping):
            code = code.get("code") or code.get("pairing_code")
        if not code or self._phase is not ConnectionPhase.AWAITING_CHALLENGE:
            return
        qr = self._challenge.qr if self._challenge else None
        self._challenge = Challenge(qr=qr, pairing_code=str(code))
        self._render(Challenge(pairing_code=str(code)))

    def _render(self, challenge: Challenge) -> None:
        if self._render_challenge is None:
            return
        try:
            self._render_challenge(challenge)
        except Exception:
            LOGGER.exception("Failed to render login challenge")

    async def _expire_challenge(self) -> None:
        await self._sleep(self._config.challenge_timeout_seconds)
        if self._phase is ConnectionPhase.AWAITING_CHALLENGE:
            LOGGER.warning(
                "Login challenge for %s expired after %ss",
                self.session_id,
                self._config.challenge_timeout_seconds,
            )
            self._resolve_attempt(_AttemptResult("timeout"))

    def _stop_challenge_timer(self) -> None:
        timer, self._challenge_timer = self._challenge_timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _on_open(self) -> None:
        self._stop_challenge_timer()
        self._challenge = None
        self._failures = 0
        self._set_phase(ConnectionPhase.OPEN)
        if self._auth is not None:
            try:
                await self._auth.persist()
            except Exception:
                LOGGER.exception("Failed to persist auth state on open for %s", self.session_id)
        if self._until_open:
            self._resolve_attempt(_AttemptResult("opened"))

    def _resolve_attempt(self, result: _AttemptResult) -> None:
        if self._attempt is not None and not self._attempt.done():
            self._attempt.set_result(result)

    async def _release_socket(self) -> None:
        socket, self._socket = self._socket, None
        if socket is None:
            return
        try:
            await socket.disconnect()
        except Exception:
            LOGGER.exception("Error while releasing socket for %s", self.session_id)

    async def _apply_logout_policy(self) -> None:
        if self._config.on_logout != LogoutPolicy.DELETE:
            return
        try:
            await asyncio.to_thread(self._store.delete, self.session_id)
            LOGGER.info("Deleted stored credentials for %s after logout", self.session_id)
        except Exception:
            LOGGER.exception("Failed to delete credentials for %s", self.session_id)

    def _next_delay(self) -> float:
        base = self._config.reconnect_delay_seconds
        delay = base * (self._config.reconnect_backoff_factor ** self._failures)
        return min(delay, max(base, self._config.reconnect_max_delay_seconds))
