"""Filesystem credential store adapter.

Implements the core CredentialStorePort with either one JSON file per session
(``layout="single"``) or one directory per session holding ``creds.json`` and
one file per key entry (``layout="multi"``).
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from typing import Any, Optional

from adapters.auth_blob import decode_auth_blob, encode_auth_blob
from core.errors import CredentialStoreError
from core.models import CREDENTIALS_KEY, KEYS_KEY, AuthState

LOGGER = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_CREDS_FILE = "creds.json"
_EXTRA_FILE = "extra.json"


def _safe_name(value: str) -> str:
    # Session and key ids end up in file names.
    cleaned = _UNSAFE_CHARS.sub("_", value).strip(".")
    return cleaned or "_"


def _atomic_write(path: str, payload: bytes) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class FileCredentialStore:
    """Local-disk storage for auth-state snapshots."""

    def __init__(self, root: str, layout: str = "single") -> None:
        if layout not in {"single", "multi"}:
            raise ValueError(f"Unsupported file store layout: {layout}")
        self._root = root
        self._layout = layout

    def path_for(self, session_id: str) -> str:
        name = _safe_name(session_id)
        if self._layout == "single":
            return os.path.join(self._root, f"{name}.json")
        return os.path.join(self._root, name)

    def load(self, session_id: str) -> Optional[AuthState]:
        """Return the stored state, or None when nothing is stored."""

        path = self.path_for(session_id)
        try:
            if self._layout == "single":
                return self._load_single(path)
            return self._load_multi(path)
        except OSError as exc:
            raise CredentialStoreError("file", session_id, str(exc)) from exc

    def save(self, session_id: str, state: AuthState) -> bool:
        """Write the whole state; returns False (and logs) on failure."""

        path = self.path_for(session_id)
        try:
            if self._layout == "single":
                _atomic_write(path, encode_auth_blob(state))
            else:
                self._save_multi(path, state)
        except (OSError, TypeError, ValueError):
            LOGGER.exception("Failed to save auth state for %s to %s", session_id, path)
            return False
        LOGGER.debug("Saved auth state for %s to %s", session_id, path)
        return True

    def delete(self, session_id: str) -> None:
        path = self.path_for(session_id)
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)

    def list_sessions(self) -> list[str]:
        if not os.path.isdir(self._root):
            return []
        names = []
        for entry in sorted(os.listdir(self._root)):
            full = os.path.join(self._root, entry)
            if entry.startswith("."):
                continue
            if self._layout == "single" and entry.endswith(".json") and os.path.isfile(full):
                names.append(entry[: -len(".json")])
            elif self._layout == "multi" and os.path.isdir(full):
                names.append(entry)
        return names

    def _load_single(self, path: str) -> Optional[AuthState]:
        if not os.path.isfile(path):
            return None
        with open(path, "rb") as handle:
            state = decode_auth_blob(handle.read())
        if state is None:
            LOGGER.warning("Ignoring unreadable auth file %s", path)
        return state

    def _load_multi(self, directory: str) -> Optional[AuthState]:
        creds_path = os.path.join(directory, _CREDS_FILE)
        if not os.path.isfile(creds_path):
            return None
        state: dict[str, Any] = {}
        extra_path = os.path.join(directory, _EXTRA_FILE)
        if os.path.isfile(extra_path):
            with open(extra_path, "rb") as handle:
                state.update(decode_auth_blob(handle.read()) or {})
        with open(creds_path, "rb") as handle:
            state[CREDENTIALS_KEY] = decode_auth_blob(handle.read()) or {}

        keys: dict[str, Any] = {}
        keys_dir = os.path.join(directory, KEYS_KEY)
        if os.path.isdir(keys_dir):
            for entry in sorted(os.listdir(keys_dir)):
                if entry.startswith(".") or not entry.endswith(".json"):
                    continue
                with open(os.path.join(keys_dir, entry), "r", encoding="utf-8") as handle:
                    try:
                        record = json.load(handle)
                    except ValueError:
                        LOGGER.warning("Skipping unreadable key file %s", entry)
                        continue
                if isinstance(record, dict) and "id" in record:
                    keys[str(record["id"])] = record.get("value")
        state[KEYS_KEY] = keys
        return state

    def _save_multi(self, directory: str, state: AuthState) -> None:
        _atomic_write(
            os.path.join(directory, _CREDS_FILE),
            encode_auth_blob(dict(state.get(CREDENTIALS_KEY) or {})),
        )
        extra = {k: v for k, v in state.items() if k not in (CREDENTIALS_KEY, KEYS_KEY)}
        _atomic_write(os.path.join(directory, _EXTRA_FILE), encode_auth_blob(extra))

        keys_dir = os.path.join(directory, KEYS_KEY)
        os.makedirs(keys_dir, exist_ok=True)
        wanted: set[str] = set()
        for key_id, value in (state.get(KEYS_KEY) or {}).items():
            file_name = f"{_safe_name(str(key_id))}.json"
            wanted.add(file_name)
            _atomic_write(
                os.path.join(keys_dir, file_name),
                encode_auth_blob({"id": str(key_id), "value": value}),
            )
        # Keys removed from the state are removed from disk too.
        for entry in os.listdir(keys_dir):
            if entry.endswith(".json") and entry not in wanted:
                os.remove(os.path.join(keys_dir, entry))
