from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from studiosync.aggregate import AppDataAggregate
from studiosync.models import StorageConfig
from studiosync.state_store import StateStore

logger = logging.getLogger(__name__)

APP_DATA_KEY = "app-data"
STORAGE_WARNING_RATIO = 0.8


class StorageQuotaError(Exception):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"Storage full! Local snapshot is {size_bytes} bytes, limit is {limit_bytes} bytes."
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class LocalSnapshotStore:
    """Durable local copy of the aggregate with a short-lived read cache."""

    def __init__(
        self,
        state_store: StateStore,
        config: StorageConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state_store = state_store
        self.config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._cache: AppDataAggregate | None = None
        self._cache_at: float | None = None
        self._last_local_write: float | None = None
        self.last_size_bytes = 0

    def _cache_fresh(self) -> bool:
        if self._cache is None or self._cache_at is None:
            return False
        return (self._clock() - self._cache_at) * 1000 < self.config.read_cache_ttl_ms

    def load(self) -> AppDataAggregate:
        with self._lock:
            if self._cache_fresh():
                return self._cache.clone()
            raw = self.state_store.get_document(APP_DATA_KEY)
            aggregate = AppDataAggregate()
            if raw is not None:
                try:
                    aggregate = AppDataAggregate.from_dict(json.loads(raw))
                except ValueError as exc:
                    logger.error("Local snapshot is not valid JSON, starting empty: %s", exc)
            self._cache = aggregate
            self._cache_at = self._clock()
            return aggregate.clone()

    def save(self, aggregate: AppDataAggregate, *, mark_local_write: bool = True) -> AppDataAggregate:
        """Stamp ``lastModified`` and persist; raises ``StorageQuotaError`` above the limit."""
        with self._lock:
            stored = aggregate.clone()
            stored.last_modified = datetime.now(timezone.utc)
            payload = json.dumps(stored.to_dict(), ensure_ascii=False)
            size_bytes = len(payload.encode("utf-8"))
            if size_bytes > self.config.max_local_bytes:
                raise StorageQuotaError(size_bytes, self.config.max_local_bytes)
            self.state_store.set_document(APP_DATA_KEY, payload)
            self.last_size_bytes = size_bytes
            self._cache = stored
            self._cache_at = self._clock()
            if mark_local_write:
                self._last_local_write = self._clock()
            if self.near_quota():
                logger.warning(
                    "Local snapshot is %.1f MB, close to the %.1f MB limit",
                    size_bytes / 1024 / 1024,
                    self.config.max_local_bytes / 1024 / 1024,
                )
            return stored.clone()

    def near_quota(self) -> bool:
        return self.last_size_bytes >= self.config.max_local_bytes * STORAGE_WARNING_RATIO

    def invalidate_cache(self) -> None:
        with self._lock:
            self._cache = None
            self._cache_at = None

    def seconds_since_local_write(self) -> float | None:
        with self._lock:
            if self._last_local_write is None:
                return None
            return self._clock() - self._last_local_write

    def recently_saved(self, grace_seconds: float) -> bool:
        elapsed = self.seconds_since_local_write()
        return elapsed is not None and elapsed < grace_seconds
