"""
String key/value persistence behind the local store.

The engine never touches disk directly; it is handed one of these.
``MemoryKeyValueStore`` backs the tests, ``FileKeyValueStore`` keeps a
single JSON document under the checksync home and rewrites it atomically.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional

from .errors import LocalStoreError

logger = logging.getLogger("checksync.kvstore")


class KeyValueStore(ABC):
    """Abstract string key/value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under ``key``, or None."""

    @abstractmethod
    def put_many(self, items: Mapping[str, str]) -> None:
        """Write several entries as one unit.

        Either every entry lands or none does.

        Raises:
            LocalStoreError: If the write could not be completed.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    def put(self, key: str, value: str) -> None:
        self.put_many({key: value})


class MemoryKeyValueStore(KeyValueStore):
    """In-process store, optionally bounded to mimic a storage quota.

    Args:
        quota: Maximum total characters across keys and values.
    """

    def __init__(self, quota: Optional[int] = None) -> None:
        self._data: dict[str, str] = {}
        self._quota = quota
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put_many(self, items: Mapping[str, str]) -> None:
        with self._lock:
            candidate = dict(self._data)
            candidate.update(items)
            if self._quota is not None:
                used = sum(len(k) + len(v) for k, v in candidate.items())
                if used > self._quota:
                    raise LocalStoreError(
                        f"Storage quota exceeded ({used} > {self._quota})"
                    )
            self._data = candidate

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileKeyValueStore(KeyValueStore):
    """JSON-document store on disk.

    Every write goes to a temp file in the same directory and is then
    renamed over the document, so readers never see a half-written file.

    Args:
        path: Location of the JSON document.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable store %s, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Store %s is not a JSON object, starting empty", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".store-", suffix=".json", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise LocalStoreError(f"Failed to write {self.path}: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def put_many(self, items: Mapping[str, str]) -> None:
        with self._lock:
            data = self._read()
            data.update(items)
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)
