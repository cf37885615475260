"""Socket and credential store factories for luxbot.

The app layer picks concrete adapters here so the core only ever sees the
ports. Secrets are read from the environment via python-dotenv to keep them
out of config.json.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from telethon import TelegramClient
from telethon.sessions import StringSession

from adapters.file_store import FileCredentialStore
from adapters.s3_store import S3CredentialStore, build_s3_client
from adapters.sqlite_storage import SQLiteCredentialStore
from adapters.telegram_socket import TelegramSocket
from core.config import CredentialBackendConfig
from core.models import AuthState
from core.ports import CredentialStorePort, SocketEvents, SocketFactory

LOGGER = logging.getLogger(__name__)


def _api_credentials() -> tuple[int, str]:
    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")

    # Fail fast on missing credentials to avoid an endless login loop.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")
    return int(api_id), api_hash


def build_socket_factory(two_fa_password: Optional[str] = None) -> SocketFactory:
    """Create a factory producing one Telethon-backed socket per attempt.

    The 2FA password defaults to the ``2FA`` environment variable.
    """

    api_id, api_hash = _api_credentials()
    password = two_fa_password if two_fa_password is not None else os.getenv("2FA")

    def _client(session: StringSession) -> TelegramClient:
        return TelegramClient(session, api_id, api_hash)

    def _factory(state: AuthState, socket_events: SocketEvents) -> TelegramSocket:
        LOGGER.info("Initializing Telegram socket")
        return TelegramSocket(state, socket_events, _client, two_fa_password=password)

    return _factory


def _resolve_path(path: str, root: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(root, path)


def build_credential_store(config: CredentialBackendConfig, root: str = ".") -> CredentialStorePort:
    """Select a credential backend from config.

    Relative paths are resolved against ``root`` (the project root).
    """

    params = dict(config.params or {})
    backend = (config.backend or "file").strip().lower()

    if backend == "file":
        directory = _resolve_path(str(params.get("path", "sessions")), root)
        return FileCredentialStore(directory, layout=str(params.get("layout", "single")))

    if backend == "sqlite":
        db_path = _resolve_path(str(params.get("path", "luxbot.db")), root)
        store = SQLiteCredentialStore(db_path, table=str(params.get("table", "sessions")))
        store.init_db()
        return store

    if backend == "s3":
        load_dotenv()
        bucket = params.get("bucket") or os.getenv("AWS_BUCKET_NAME")
        if not bucket:
            raise RuntimeError("session.bucket or AWS_BUCKET_NAME is required for the s3 backend")
        region = params.get("region") or os.getenv("AWS_REGION")
        return S3CredentialStore(
            build_s3_client(region),
            bucket=str(bucket),
            prefix=str(params.get("prefix", "lux-sessions")),
            object_key=params.get("object_key") or os.getenv("AWS_OBJECT_KEY"),
        )

    raise ValueError(f"Unknown credential backend: {config.backend}")
