"""Moving session snapshots in and out of the bot over HTTP.

- ``fetch_session_from_url`` seeds an empty store from a (presigned) URL
- ``SessionWebhookExporter`` posts a base64 snapshot after each successful open
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Optional

from adapters.auth_blob import decode_auth_blob, encode_auth_blob
from core.models import AuthState, ConnectionPhase
from core.ports import CredentialStorePort

LOGGER = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10


def fetch_session_from_url(url: str) -> Optional[AuthState]:
    """Download a snapshot that is either raw JSON or base64-encoded JSON."""

    request = urllib.request.Request(url, method="GET")
    # Blocking call; runs once at startup before the event loop is busy.
    with urllib.request.urlopen(request, timeout=_TIMEOUT_SECONDS) as response:
        body = response.read()
    state = decode_auth_blob(body)
    if state is None:
        raise ValueError("Fetched content is neither JSON nor base64-encoded JSON")
    return state


def seed_store_from_url(store: CredentialStorePort, session_id: str, url: Optional[str]) -> bool:
    """Fill ``store`` from ``url`` when it has nothing for ``session_id``.

    Returns True when a snapshot was written. Failures are logged and the
    session simply starts fresh.
    """

    if not url:
        return False
    try:
        if store.load(session_id) is not None:
            LOGGER.info("Session %s already stored; skipping URL seed", session_id)
            return False
        state = fetch_session_from_url(url)
    except (OSError, ValueError) as exc:
        LOGGER.warning("Could not seed session %s from URL: %s", session_id, exc)
        return False
    except Exception as exc:
        LOGGER.warning("Could not read session %s before seeding: %s", session_id, exc)
        return False
    saved = store.save(session_id, state)
    if saved:
        LOGGER.info("Seeded session %s from URL", session_id)
    return saved


class SessionWebhookExporter:
    """Phase listener that posts the auth snapshot when the session opens."""

    def __init__(self, webhook_url: str, snapshot_provider) -> None:
        self._webhook_url = webhook_url
        self._snapshot_provider = snapshot_provider

    def __call__(self, phase: ConnectionPhase, challenge: Any = None) -> Optional[asyncio.Future]:
        if phase is not ConnectionPhase.OPEN:
            return None
        snapshot = self._snapshot_provider()
        if snapshot is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.post(snapshot)
            return None
        future = loop.run_in_executor(None, self.post, snapshot)
        future.add_done_callback(_log_post_failure)
        return future

    def post(self, state: AuthState) -> bool:
        payload = {"authBase64": base64.b64encode(encode_auth_blob(state)).decode("ascii")}
        data = json.dumps(payload).encode("utf-8")
        try:
            request = urllib.request.Request(self._webhook_url, data=data, method="POST")
            request.add_header("Content-Type", "application/json")
            with urllib.request.urlopen(request, timeout=_TIMEOUT_SECONDS):
                pass
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            LOGGER.warning("Session webhook returned %s: %s", exc.code, body)
            return False
        except (urllib.error.URLError, OSError, ValueError) as exc:
            LOGGER.warning("Session webhook failed: %s", exc)
            return False
        LOGGER.info("Posted session snapshot to webhook")
        return True


def _log_post_failure(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Session webhook export crashed", exc_info=exc)
