"""Static configuration for luxbot.

All user-editable settings (session backend, command marker, owners, rate
limits, reconnect policy, logging) live in a single JSON file for quick edits
without touching Python. Secrets stay in the environment.
"""

import json
import os

from core.config import (
    CredentialBackendConfig,
    DispatcherConfig,
    LifecycleConfig,
    RateLimitConfig,
)
from core.models import DisconnectReason, LogoutPolicy

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.environ.get("LUXBOT_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def build_backend_config(raw: dict) -> CredentialBackendConfig:
    params = {key: value for key, value in raw.items() if key not in {"id", "backend"}}
    return CredentialBackendConfig(backend=str(raw.get("backend", "file")), params=params)


def build_dispatcher_config(commands: dict, rate_limit: dict) -> DispatcherConfig:
    """Map the ``commands`` and ``rate_limit`` sections onto DispatcherConfig."""

    marker = str(commands.get("marker", "."))
    if not marker:
        raise ValueError("commands.marker must not be empty")
    suffixes = commands.get("group_suffixes") or []
    return DispatcherConfig(
        marker=marker,
        lookalikes=commands.get("lookalikes"),
        owners=frozenset(str(owner) for owner in commands.get("owners", [])),
        rate_limit=RateLimitConfig(
            limit=int(rate_limit.get("limit", 20)),
            window_seconds=float(rate_limit.get("window_seconds", 300)),
        ),
        throttle_reply=bool(commands.get("throttle_reply", True)),
        echo_default=bool(commands.get("echo_default", False)),
        group_suffixes=tuple(str(suffix) for suffix in suffixes),
    )


def build_lifecycle_config(lifecycle: dict) -> LifecycleConfig:
    on_logout = str(lifecycle.get("on_logout", LogoutPolicy.KEEP.value)).lower()
    codes = lifecycle.get("logout_status_codes") or [int(DisconnectReason.LOGGED_OUT)]
    return LifecycleConfig(
        reconnect_delay_seconds=float(lifecycle.get("reconnect_delay_seconds", 3)),
        reconnect_backoff_factor=float(lifecycle.get("reconnect_backoff_factor", 1.0)),
        reconnect_max_delay_seconds=float(lifecycle.get("reconnect_max_delay_seconds", 60)),
        challenge_timeout_seconds=float(lifecycle.get("challenge_timeout_seconds", 120)),
        # Raises ValueError on anything other than "keep" or "delete".
        on_logout=LogoutPolicy(on_logout),
        logout_status_codes=frozenset(int(code) for code in codes),
        pairing_phone=lifecycle.get("pairing_phone") or None,
    )


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Session identity and where its credentials live.
_session = _CONFIG.get("session", {})
SESSION_ID = str(_session.get("id", "default"))
CREDENTIAL_BACKEND = build_backend_config(_session)

# Command parsing, authorization and throttling.
DISPATCHER_CONFIG = build_dispatcher_config(
    _CONFIG.get("commands", {}),
    _CONFIG.get("rate_limit", {}),
)

# Reconnect, challenge and logout behavior.
LIFECYCLE_CONFIG = build_lifecycle_config(_CONFIG.get("lifecycle", {}))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
