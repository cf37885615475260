"""Serialization helpers for persisted auth-state blobs.

Stored blobs are JSON. Blobs fetched from outside (object storage, URLs) may
also arrive base64-encoded, so decoding accepts both.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Optional, Union


def encode_auth_blob(state: dict[str, Any]) -> bytes:
    return json.dumps(state, indent=2, sort_keys=True, default=str).encode("utf-8")


def decode_auth_blob(data: Union[bytes, str]) -> Optional[dict[str, Any]]:
    """Decode raw JSON or base64 JSON; return None when it is neither."""

    raw = data.encode("utf-8") if isinstance(data, str) else data
    if not raw or not raw.strip():
        return None
    try:
        decoded = json.loads(raw)
    except ValueError:
        try:
            decoded = json.loads(base64.b64decode(raw, validate=False))
        except (ValueError, binascii.Error):
            return None
    return decoded if isinstance(decoded, dict) else None
