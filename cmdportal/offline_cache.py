from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from . import db
from .store.kv import STORAGE_ERRORS, Storage
from .store.types import OFFLINE_CACHE_KEY
from .store.utils import now_ms

logger = logging.getLogger(__name__)


class OfflineCache:
    """Last known API responses, keyed by resource, for rendering while offline."""

    def __init__(
        self,
        storage: Storage,
        *,
        key: str = OFFLINE_CACHE_KEY,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.storage = storage
        self.key = key
        self.clock = clock
        self._entries: dict[str, dict[str, Any]] | None = None

    def set(self, resource: str, data: Any) -> None:
        entries = self._load()
        entries[resource] = {"data": data, "timestamp": self.clock()}
        self._persist(entries)

    def get(self, resource: str, default: Any = None) -> Any:
        entry = self._load().get(resource)
        if entry is None:
            return default
        return entry.get("data", default)

    def get_all(self) -> dict[str, dict[str, Any]]:
        return {resource: dict(entry) for resource, entry in self._load().items()}

    def remove(self, resource: str) -> bool:
        entries = self._load()
        if resource not in entries:
            return False
        del entries[resource]
        self._persist(entries)
        return True

    def clear(self) -> None:
        self._entries = {}
        try:
            self.storage.remove(self.key)
        except STORAGE_ERRORS as exc:
            logger.warning("offline cache clear failed; cleared in memory only", exc_info=exc)

    def size_bytes(self) -> int:
        return len(db.to_json(self._load()).encode("utf-8"))

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._entries is not None:
            return self._entries
        entries: dict[str, dict[str, Any]] = {}
        try:
            data = db.from_json(self.storage.get(self.key))
        except STORAGE_ERRORS as exc:
            logger.warning("offline cache read failed", exc_info=exc)
            data = None
        except ValueError as exc:
            logger.warning("offline cache is corrupt; starting empty", exc_info=exc)
            data = None
        if isinstance(data, dict):
            for resource, entry in data.items():
                if isinstance(entry, dict) and "data" in entry:
                    entries[str(resource)] = entry
        self._entries = entries
        return entries

    def _persist(self, entries: dict[str, dict[str, Any]]) -> None:
        self._entries = entries
        try:
            self.storage.set(self.key, db.to_json(entries))
        except (*STORAGE_ERRORS, TypeError, ValueError) as exc:
            logger.warning("offline cache write failed; keeping entries in memory", exc_info=exc)
