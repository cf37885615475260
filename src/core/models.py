"""Core domain models.

These types are shared across the core and adapters to avoid tight coupling to
any integration-specific objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

# Auth state is a plain mutable mapping. After normalization it always holds
# mapping values under CREDENTIALS_KEY and KEYS_KEY; other top-level keys are
# preserved as-is.
AuthState = dict
CREDENTIALS_KEY = "credentials"
KEYS_KEY = "keys"

# Envelopes are opaque nested mappings owned by the socket collaborator.
Envelope = Mapping[str, Any]


class ConnectionPhase(str, Enum):
    """Lifecycle phases of one logical session."""

    INIT = "init"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"


class LifecycleOutcome(str, Enum):
    """Terminal result of ConnectionLifecycleManager.run()."""

    OPENED = "opened"
    LOGGED_OUT = "logged_out"
    CHALLENGE_TIMEOUT = "challenge_timeout"
    STOPPED = "stopped"


class DisconnectReason(IntEnum):
    """Close status codes reported by socket adapters."""

    LOGGED_OUT = 401
    CONNECTION_LOST = 408
    CONNECTION_CLOSED = 428
    RESTART_REQUIRED = 515


class LogoutPolicy(str, Enum):
    KEEP = "keep"
    DELETE = "delete"


@dataclass(frozen=True)
class Challenge:
    """Transient login challenge shown to an operator."""

    qr: Optional[str] = None
    pairing_code: Optional[str] = None


@dataclass(frozen=True)
class ConnectionUpdate:
    """One connection event from the socket collaborator.

    ``connection`` is "connecting", "open" or "close" when the socket reports a
    phase change, ``status_code`` is only meaningful on close.
    """

    connection: Optional[str] = None
    qr: Optional[str] = None
    pairing_code: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RateLimitBucket:
    sender_key: str
    count: int
    window_start: float


@dataclass
class Command:
    """A user-invokable command.

    ``handler`` receives a CommandContext and may be sync or async.
    """

    name: str
    handler: Callable[..., Union[Awaitable[Any], Any]]
    aliases: frozenset[str] = field(default_factory=frozenset)
    owner_only: bool = False
    group_only: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        # Accept any iterable of aliases from command modules.
        self.aliases = frozenset(self.aliases or ())
