from __future__ import annotations

from pathlib import Path

import pytest

import client
from adapters.file_store import FileCredentialStore
from adapters.s3_store import S3CredentialStore
from adapters.sqlite_storage import SQLiteCredentialStore
from core.config import CredentialBackendConfig


def test_file_backend_resolves_relative_path(tmp_path: Path) -> None:
    store = client.build_credential_store(
        CredentialBackendConfig("file", {"path": "sessions", "layout": "multi"}),
        root=str(tmp_path),
    )

    assert isinstance(store, FileCredentialStore)
    assert store.path_for("main") == str(tmp_path / "sessions" / "main")


def test_sqlite_backend_creates_table(tmp_path: Path) -> None:
    store = client.build_credential_store(CredentialBackendConfig("sqlite", {"path": "lux.db"}), root=str(tmp_path))

    assert isinstance(store, SQLiteCredentialStore)
    assert (tmp_path / "lux.db").is_file()
    assert store.list_sessions() == []


def test_s3_backend_uses_env_bucket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(client, "load_dotenv", lambda: None)
    monkeypatch.setattr(client, "build_s3_client", lambda region: object())
    monkeypatch.setenv("AWS_BUCKET_NAME", "lux-bucket")

    store = client.build_credential_store(CredentialBackendConfig("s3", {}))

    assert isinstance(store, S3CredentialStore)
    assert store.key_for("main") == "lux-sessions/main/auth.json"


def test_s3_backend_requires_bucket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(client, "load_dotenv", lambda: None)
    monkeypatch.delenv("AWS_BUCKET_NAME", raising=False)

    with pytest.raises(RuntimeError):
        client.build_credential_store(CredentialBackendConfig("s3", {}))


def test_unknown_backend() -> None:
    with pytest.raises(ValueError):
        client.build_credential_store(CredentialBackendConfig("redis", {}))


def test_socket_factory_requires_api_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(client, "load_dotenv", lambda: None)
    monkeypatch.delenv("API_ID", raising=False)
    monkeypatch.delenv("API_HASH", raising=False)

    with pytest.raises(RuntimeError):
        client.build_socket_factory()
