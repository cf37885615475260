"""Exceptions raised by the core."""

from __future__ import annotations


class BotError(Exception):
    """Base class for lux runtime errors."""


class InvalidCommandError(BotError, ValueError):
    """A command was registered without a name or handler."""


class SocketNotReadyError(BotError, RuntimeError):
    """An outbound send was attempted while no socket is open."""


class CredentialStoreError(BotError):
    """A credential backend failed to read persisted state."""

    def __init__(self, backend: str, session_id: str, message: str) -> None:
        super().__init__(f"{backend} store failed for session {session_id}: {message}")
        self.backend = backend
        self.session_id = session_id
