"""SQLite credential store adapter.

Implements the core CredentialStorePort using a single relational table with
a JSON column, upserted by session id.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from adapters.auth_blob import decode_auth_blob
from core.errors import CredentialStoreError
from core.models import AuthState

LOGGER = logging.getLogger(__name__)


class SQLiteCredentialStore:
    """Thin SQLite wrapper that satisfies the CredentialStorePort contract."""

    def __init__(self, db_path: str, table: str = "sessions") -> None:
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self._db_path = db_path
        self._table = table
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the sessions table if it does not exist.

        Fields:
        - id: session id (PRIMARY KEY)
        - data: JSON snapshot of the whole auth state
        - created_at / updated_at: ISO timestamps in UTC
        """

        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
        self._initialized = True

    def _ensure_db(self) -> None:
        if not self._initialized:
            self.init_db()

    def load(self, session_id: str) -> Optional[AuthState]:
        """Return the stored state for a session, if any."""

        try:
            self._ensure_db()
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT data FROM {self._table} WHERE id = ?",
                    (session_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise CredentialStoreError("sqlite", session_id, str(exc)) from exc
        if row is None:
            return None
        state = decode_auth_blob(row["data"])
        if state is None:
            LOGGER.warning("Ignoring unreadable auth row for %s", session_id)
        return state

    def save(self, session_id: str, state: AuthState) -> bool:
        """Upsert the whole state; idempotent on conflict."""

        now = datetime.now(timezone.utc).isoformat()
        try:
            payload = json.dumps(state, default=str)
            self._ensure_db()
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {self._table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (session_id, payload, now, now),
                )
        except (sqlite3.Error, TypeError, ValueError):
            LOGGER.exception("Failed to save auth state for %s", session_id)
            return False
        return True

    def delete(self, session_id: str) -> None:
        self._ensure_db()
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table} WHERE id = ?", (session_id,))

    def list_sessions(self) -> list[str]:
        self._ensure_db()
        with self._connect() as conn:
            rows = conn.execute(f"SELECT id FROM {self._table} ORDER BY id").fetchall()
        return [row["id"] for row in rows]
