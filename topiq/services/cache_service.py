"""
Durable key-value storage and the TTL response cache.

The key-value stores stand in for the browser's local storage: values are
strings, keys are namespaced by the callers (see KEY_* constants). The
SQLite-backed store uses aiosqlite so storage calls never block the event
loop.
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite

from topiq.utils.error_monitoring import StorageFailure


KEY_FEED = "topiq.feed"
KEY_SAVED_ARTICLES = "topiq.saved_articles"
KEY_LIKED = "topiq.liked"
KEY_VIEWED_ARTICLES = "topiq.viewed_articles"
CACHE_KEY_PREFIX = "topiq.cache."
CACHE_INDEX_KEY = "topiq.cache_index"


class KeyValueStore(ABC):
    """Async get/set/remove capability over string values."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        ...


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store, used for tests and as the in-memory fallback."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


class SqliteKeyValueStore(KeyValueStore):
    """
    SQLite-based durable store.
    Call `await initialize_db()` before use, or let the first access do it.
    """

    def __init__(self, db_path: str = "data/topiq.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        self._initialized = False

    async def initialize_db(self) -> None:
        """Create the key-value table if missing."""
        try:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );
                    """
                )
                await db.commit()
            self._initialized = True
        except Exception as e:
            raise StorageFailure(f"Failed to initialize store at {self.db_path}: {e}") from e

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize_db()

    async def get(self, key: str) -> Optional[str]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute("SELECT value FROM kv_store WHERE key = ? LIMIT 1", (key,))
                row = await cur.fetchone()
                return row[0] if row else None
        except Exception as e:
            raise StorageFailure(f"Failed to read '{key}': {e}") from e

    async def set(self, key: str, value: str) -> None:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    ;
                    """,
                    (key, value, datetime.now(timezone.utc).isoformat()),
                )
                await db.commit()
        except Exception as e:
            raise StorageFailure(f"Failed to write '{key}': {e}") from e

    async def remove(self, key: str) -> None:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                await db.commit()
        except Exception as e:
            raise StorageFailure(f"Failed to remove '{key}': {e}") from e


@dataclass
class CacheEntry:
    data: Any
    timestamp: float


class TTLCache:
    """
    Response cache with per-lookup time-to-live.

    Owned by the feed session and handed to the adapters; entries are kept
    in memory and, when a store is given, mirrored under `topiq.cache.<key>`
    so they survive restarts. The mirrored keys are listed under
    `topiq.cache_index` so `clear()` reaches entries written by an earlier
    process. Values must be JSON-serializable.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock
        self.entries: Dict[str, CacheEntry] = {}
        self.logger = logging.getLogger(__name__)

    def _is_fresh(self, entry: CacheEntry, ttl: float) -> bool:
        return self.clock() - entry.timestamp < ttl

    async def get(self, key: str, ttl: float) -> Optional[Any]:
        """Return cached data younger than `ttl` seconds, else None."""
        if ttl <= 0:
            return None

        entry = self.entries.get(key)
        if entry is None and self.store is not None:
            entry = await self._load(key)
            if entry is not None:
                self.entries[key] = entry

        if entry is None:
            return None
        if not self._is_fresh(entry, ttl):
            self.logger.debug(f"Cache entry expired: {key}")
            return None
        return entry.data

    async def set(self, key: str, data: Any) -> None:
        entry = CacheEntry(data=data, timestamp=self.clock())
        self.entries[key] = entry
        if self.store is None:
            return
        try:
            await self.store.set(
                CACHE_KEY_PREFIX + key,
                json.dumps({"data": entry.data, "timestamp": entry.timestamp}),
            )
            index = await self._read_index()
            if key not in index:
                index.append(key)
                await self.store.set(CACHE_INDEX_KEY, json.dumps(index))
        except StorageFailure as e:
            self.logger.warning(f"Cache write-through failed for {key}: {e}")

    async def get_or_fetch(self, key: str, ttl: float, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        """Serve from cache when fresh, otherwise call `fetch_fn` and cache a non-empty result."""
        cached = await self.get(key, ttl)
        if cached is not None:
            return cached

        data = await fetch_fn()
        if ttl > 0 and data:
            await self.set(key, data)
        return data

    async def invalidate(self, key: str) -> None:
        self.entries.pop(key, None)
        if self.store is None:
            return
        try:
            await self.store.remove(CACHE_KEY_PREFIX + key)
            index = await self._read_index()
            if key in index:
                index.remove(key)
                await self.store.set(CACHE_INDEX_KEY, json.dumps(index))
        except StorageFailure as e:
            self.logger.warning(f"Cache invalidation failed for {key}: {e}")

    async def clear(self) -> None:
        """Drop every entry, including persisted ones this process never loaded."""
        keys = set(self.entries)
        self.entries.clear()
        if self.store is None:
            return
        try:
            keys.update(await self._read_index())
            for key in keys:
                await self.store.remove(CACHE_KEY_PREFIX + key)
            await self.store.remove(CACHE_INDEX_KEY)
        except StorageFailure as e:
            self.logger.warning(f"Cache clear failed: {e}")
            return
        self.logger.info(f"Cleared {len(keys)} cache entries")

    async def _read_index(self) -> List[str]:
        raw = await self.store.get(CACHE_INDEX_KEY)
        if not raw:
            return []
        try:
            index = json.loads(raw)
        except ValueError:
            self.logger.warning("Discarding corrupt cache index")
            return []
        return [k for k in index if isinstance(k, str)] if isinstance(index, list) else []

    async def _load(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self.store.get(CACHE_KEY_PREFIX + key)
        except StorageFailure as e:
            self.logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return CacheEntry(data=payload["data"], timestamp=float(payload["timestamp"]))
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Discarding corrupt cache entry {key}: {e}")
            return None
