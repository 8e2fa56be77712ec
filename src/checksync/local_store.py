"""
Local Store -- per-user snapshot persistence on top of a key/value store.

Layout (namespace defaults to ``checklist``):

    <ns>-<userId>-data            JSON snapshot
    <ns>-<userId>-last-modified   ISO-8601 timestamp
    <ns>-endpoint                 cloud endpoint, global
    <ns>-auto-sync                "true" / "false", global

Only the user id namespaces records; two identities sharing one store
never see each other's checklist.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

from .errors import LocalStoreError
from .kvstore import KeyValueStore
from .models import StorageConfig, StorageRecord

logger = logging.getLogger("checksync.local_store")

DEFAULT_NAMESPACE = "checklist"


class LocalStore:
    """Durable per-user record store.

    Owns no state of its own: every call is told which user it is for.

    Args:
        kv: Backing key/value store.
        namespace: Prefix for every key written.
    """

    def __init__(self, kv: KeyValueStore, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.kv = kv
        self.namespace = namespace

    def _key(self, user_id: str, suffix: str) -> str:
        return f"{self.namespace}-{user_id}-{suffix}"

    def data_key(self, user_id: str) -> str:
        return self._key(user_id, "data")

    def timestamp_key(self, user_id: str) -> str:
        return self._key(user_id, "last-modified")

    def put(self, user_id: str, record: StorageRecord) -> None:
        """Persist ``record`` for ``user_id``.

        Both entries are serialized before anything is written and then
        written as one unit.

        Raises:
            LocalStoreError: On serialization or storage failure. Prior
                state is left untouched.
        """
        try:
            blob = json.dumps(record.data, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise LocalStoreError(f"Snapshot is not serializable: {exc}") from exc

        self.kv.put_many({
            self.data_key(user_id): blob,
            self.timestamp_key(user_id): record.timestamp.isoformat(),
        })
        logger.debug("Saved %d item(s) for user %s", len(record.data), user_id)

    def get(self, user_id: str) -> Optional[StorageRecord]:
        """Return the last record written for ``user_id``.

        Returns None when nothing was written or the blob is unreadable,
        so callers fall back to an empty checklist.
        """
        blob = self.kv.get(self.data_key(user_id))
        if blob is None:
            return None

        try:
            data = json.loads(blob)
        except json.JSONDecodeError as exc:
            logger.error("Failed to load local data for %s: %s", user_id, exc)
            return None
        if not isinstance(data, dict):
            logger.error("Local data for %s is not an object, ignoring", user_id)
            return None

        record = StorageRecord(data=data)
        raw_ts = self.kv.get(self.timestamp_key(user_id))
        if raw_ts:
            try:
                record.timestamp = datetime.fromisoformat(raw_ts)
            except ValueError:
                logger.warning("Bad last-modified value for %s: %r", user_id, raw_ts)
        return record

    def clear(self, user_id: str) -> None:
        """Forget everything stored for ``user_id``."""
        self.kv.delete(self.data_key(user_id))
        self.kv.delete(self.timestamp_key(user_id))

    # -- global config ---------------------------------------------------

    @property
    def endpoint_key(self) -> str:
        return f"{self.namespace}-endpoint"

    @property
    def auto_sync_key(self) -> str:
        return f"{self.namespace}-auto-sync"

    def load_config(self) -> StorageConfig:
        """Read the persisted cloud settings. Auto-sync defaults to on."""
        return StorageConfig(
            endpoint=self.kv.get(self.endpoint_key) or "",
            auto_sync=self.kv.get(self.auto_sync_key) != "false",
        )

    def save_config(self, config: StorageConfig) -> None:
        """Persist the cloud settings.

        Raises:
            LocalStoreError: If the write fails.
        """
        self.kv.put_many({
            self.endpoint_key: config.endpoint,
            self.auto_sync_key: "true" if config.auto_sync else "false",
        })
        logger.info(
            "Storage config saved: endpoint=%s auto_sync=%s",
            config.endpoint or "<none>",
            config.auto_sync,
        )
