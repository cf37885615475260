"""Ports (interfaces) used by the core.

Ports define the minimal contracts for credential storage and the chat socket
so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from core.models import AuthState, ConnectionUpdate, Envelope


class CredentialStorePort(Protocol):
    """Persistence for auth-state snapshots keyed by session id."""

    def load(self, session_id: str) -> Optional[AuthState]:
        ...

    def save(self, session_id: str, state: AuthState) -> bool:
        ...

    def delete(self, session_id: str) -> None:
        ...


class SocketEvents(Protocol):
    """Callbacks a socket adapter invokes for inbound events."""

    async def connection_update(self, update: ConnectionUpdate) -> None:
        ...

    async def credentials_update(self, partial: Mapping[str, Any]) -> None:
        ...

    async def messages_upsert(self, envelopes: Sequence[Envelope]) -> None:
        ...


class SocketPort(Protocol):
    """One live connection to the chat network."""

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def send_message(
        self, recipient: str, content: Mapping[str, Any], quoted: Optional[Envelope] = None
    ) -> None:
        ...


class MessageSenderPort(Protocol):
    """Outbound sends used by the dispatcher."""

    async def send_message(
        self, recipient: str, content: Mapping[str, Any], quoted: Optional[Envelope] = None
    ) -> None:
        ...


# Builds a socket bound to the given auth state and event sink.
SocketFactory = Callable[[AuthState, SocketEvents], SocketPort]
