"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from core.models import DisconnectReason, LogoutPolicy


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-sender command budget."""

    limit: int = 20
    window_seconds: float = 300.0


@dataclass(frozen=True)
class LifecycleConfig:
    """Reconnect, challenge and logout settings for one session."""

    reconnect_delay_seconds: float = 3.0
    reconnect_backoff_factor: float = 1.0
    reconnect_max_delay_seconds: float = 60.0
    challenge_timeout_seconds: float = 120.0
    on_logout: LogoutPolicy = LogoutPolicy.KEEP
    logout_status_codes: frozenset[int] = frozenset({int(DisconnectReason.LOGGED_OUT)})
    pairing_phone: Optional[str] = None


@dataclass(frozen=True)
class DispatcherConfig:
    """Command marker, authorization and throttling settings."""

    marker: str = "."
    lookalikes: Optional[str] = None
    owners: frozenset[str] = frozenset()
    rate_limit: RateLimitConfig = RateLimitConfig()
    throttle_reply: bool = True
    echo_default: bool = False
    group_suffixes: tuple[str, ...] = ()


@dataclass(frozen=True)
class CredentialBackendConfig:
    """Selected credential backend and its connection parameters.

    backend: "file", "s3" or "sqlite".
    """

    backend: str = "file"
    params: Mapping[str, Any] = field(default_factory=dict)
