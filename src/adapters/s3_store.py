"""Object-storage (S3) credential store adapter.

Snapshots are written to ``<prefix>/<session_id>/auth.json``. Loading uses an
exact key when configured, otherwise the most recently modified object under
the session's prefix, which also picks up snapshots uploaded by other tools.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from adapters.auth_blob import decode_auth_blob, encode_auth_blob
from core.errors import CredentialStoreError
from core.models import AuthState

LOGGER = logging.getLogger(__name__)

SNAPSHOT_NAME = "auth.json"


def build_s3_client(region: Optional[str] = None) -> Any:
    """Create a boto3 S3 client; credentials come from the usual AWS env vars."""

    return boto3.client("s3", region_name=region or None)


class S3CredentialStore:
    """S3 bucket storage that satisfies the CredentialStorePort contract."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        prefix: str = "lux-sessions",
        object_key: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 credential store requires a bucket")
        self._client = client
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._object_key = object_key or None

    def _session_prefix(self, session_id: str) -> str:
        if self._prefix:
            return f"{self._prefix}/{session_id}/"
        return f"{session_id}/"

    def key_for(self, session_id: str) -> str:
        return f"{self._session_prefix(session_id)}{SNAPSHOT_NAME}"

    def _list_objects(self, prefix: str) -> list[dict[str, Any]]:
        objects: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": prefix}
        while True:
            response = self._client.list_objects_v2(**kwargs)
            objects.extend(response.get("Contents") or [])
            if not response.get("IsTruncated"):
                return objects
            kwargs["ContinuationToken"] = response.get("NextContinuationToken")

    def _latest_key(self, session_id: str) -> Optional[str]:
        candidates = [
            obj for obj in self._list_objects(self._session_prefix(session_id)) if obj.get("Key")
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda obj: obj.get("LastModified") or 0)
        return latest["Key"]

    def load(self, session_id: str) -> Optional[AuthState]:
        """Download and decode the session snapshot, or None if there is none."""

        try:
            key = self._object_key or self._latest_key(session_id)
            if key is None:
                return None
            LOGGER.info("Loading auth state for %s from s3://%s/%s", session_id, self._bucket, key)
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            body = response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            if _is_missing_key(exc):
                return None
            raise CredentialStoreError("s3", session_id, str(exc)) from exc
        state = decode_auth_blob(body)
        if state is None:
            LOGGER.warning("Ignoring unreadable S3 object %s", key)
        return state

    def save(self, session_id: str, state: AuthState) -> bool:
        key = self.key_for(session_id)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=encode_auth_blob(state),
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError):
            LOGGER.exception("Failed to upload auth state for %s to %s", session_id, key)
            return False
        return True

    def delete(self, session_id: str) -> None:
        for obj in self._list_objects(self._session_prefix(session_id)):
            if obj.get("Key"):
                self._client.delete_object(Bucket=self._bucket, Key=obj["Key"])


def _is_missing_key(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    code = exc.response.get("Error", {}).get("Code")
    return code in {"NoSuchKey", "404", "NotFound"}
