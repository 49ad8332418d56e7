"""Key-value store with per-key expiry, backed by Cloud Storage.

Each key is one object under ``prefix``. Expiry is recorded in the object's
metadata (``expires_at``) and enforced on read; ``custom_time`` is set as well
so a bucket lifecycle rule (daysSinceCustomTime) can delete stale objects.
"""

import logging
from datetime import datetime, timedelta, timezone

from google.api_core.exceptions import NotFound
from google.cloud import storage

from .timing import timed_operation


logger = logging.getLogger(__name__)


def _is_expired(expires_at: str) -> bool:
    """Unparsable expiry metadata counts as expired."""
    try:
        moment = datetime.fromisoformat(expires_at)
    except (TypeError, ValueError):
        logger.warning(f"[KV] Unparsable expires_at {expires_at!r}, treating key as expired")
        return True
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment <= datetime.now(timezone.utc)


class GcsKeyValueStore:
    """Single-key get/put/delete over a GCS bucket."""

    def __init__(self, bucket_name: str, prefix: str = "", client=None):
        self.bucket_name = bucket_name
        self.prefix = prefix
        self._client = client

    def _bucket(self):
        if self._client is None:
            self._client = storage.Client()
        return self._client.bucket(self.bucket_name)

    def _path(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> str | None:
        """Return the stored value, or None if absent or expired."""
        path = self._path(key)
        with timed_operation() as elapsed:
            blob = self._bucket().get_blob(path)
            if blob is None:
                logger.debug(f"[KV] Miss: {path} | {elapsed():.0f}ms")
                return None

            expires_at = (blob.metadata or {}).get("expires_at")
            if expires_at and _is_expired(expires_at):
                logger.info(f"[KV] Expired: {path} (expired at {expires_at})")
                return None

            try:
                value = blob.download_as_text()
            except NotFound:
                # Deleted between lookup and download
                logger.info(f"[KV] Vanished during read: {path}")
                return None

            logger.debug(f"[KV] Hit: {path} | {elapsed():.0f}ms")
            return value

    def put(self, key: str, value: str, expiration_ttl: int | None = None, metadata: dict | None = None) -> None:
        """Store a value, optionally expiring after ``expiration_ttl`` seconds.

        Args:
            key: Store key
            value: Serialized value (JSON)
            expiration_ttl: Seconds until the key reads as absent
            metadata: Extra string metadata stored alongside the value
        """
        path = self._path(key)
        blob = self._bucket().blob(path)

        blob_metadata = {name: str(val) for name, val in (metadata or {}).items()}
        if expiration_ttl:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expiration_ttl)
            blob_metadata["expires_at"] = expires_at.isoformat()
            blob.custom_time = expires_at
        if blob_metadata:
            blob.metadata = blob_metadata

        with timed_operation() as elapsed:
            blob.upload_from_string(value, content_type="application/json")
            logger.info(f"[KV] Stored: {path} | {len(value)} bytes | ttl={expiration_ttl or 'none'} | {elapsed():.0f}ms")

    def delete(self, key: str) -> None:
        """Remove a key. Deleting an absent key is not an error."""
        path = self._path(key)
        try:
            self._bucket().blob(path).delete()
            logger.info(f"[KV] Deleted: {path}")
        except NotFound:
            logger.debug(f"[KV] Delete of absent key: {path}")
