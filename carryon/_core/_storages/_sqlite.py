from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from carryon._core._headers import ByteRange, HeaderValue
from carryon._core._storages._base import (
    BaseCacheStore,
    assert_cache_key,
    assert_cache_value,
    vary_matches,
)
from carryon._core._storages._packing import pack, unpack
from carryon._core.models import CacheEntry, CacheKey, CacheValue
from carryon._exceptions import StoreError
from carryon._utils import ensure_cache_dict

logger = logging.getLogger("carryon.storages.sqlite")

# Entries with a larger body are silently not stored.
MAX_ENTRY_SIZE = 2 * 1000 * 1000 * 1000
DEFAULT_MAX_ENTRY_COUNT = 16 * 1024
# How often expired rows may be removed opportunistically (seconds).
PRUNE_INTERVAL = 60
# Share of the oldest rows evicted when the table is full.
EVICTION_RATIO = 0.1

_INSERT_COLUMNS = (
    "url, method, body, start, \"end\", delete_at, status_code, status_message, "
    "headers, cache_control_directives, etag, vary, cached_at, stale_at"
)
_COLUMNS = "id, " + _INSERT_COLUMNS


class SqliteCacheStore(BaseCacheStore):
    """
    Response cache persisted in a single SQLite table.

    Example:
    ```python
        store = SqliteCacheStore(connection=sqlite3.connect(":memory:"))
        store.set(key, value)
        store.get(key)
    ```
    """

    def __init__(
        self,
        *,
        connection: Optional[sqlite3.Connection] = None,
        database_path: Union[str, Path] = "carryon_cache.db",
        max_entry_size: int = MAX_ENTRY_SIZE,
        max_entry_count: int = DEFAULT_MAX_ENTRY_COUNT,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not isinstance(max_entry_size, int) or isinstance(max_entry_size, bool) or max_entry_size < 0:
            raise TypeError("max_entry_size must be a non-negative integer")
        if not isinstance(max_entry_count, int) or isinstance(max_entry_count, bool) or max_entry_count < 0:
            raise TypeError("max_entry_count must be a non-negative integer")

        self.connection = connection
        self.database_path: Path = database_path if isinstance(database_path, Path) else Path(database_path)
        self.max_entry_size = max_entry_size
        self.max_entry_count = max_entry_count
        self._clock = clock or time.time
        self._last_prune: Optional[float] = None
        self._initialized = False
        self._closed = False

    def _ensure_connection(self) -> sqlite3.Connection:
        """Ensure connection is established and database is initialized."""
        if self._closed:
            raise StoreError("the cache store is closed")
        if self.connection is None:
            parent = self.database_path.parent if self.database_path.parent != Path(".") else None
            full_path = ensure_cache_dict(parent) / self.database_path.name
            self.connection = sqlite3.connect(str(full_path))
        if not self._initialized:
            self._initialize_database()
            self._initialized = True
        return self.connection

    def _initialize_database(self) -> None:
        assert self.connection is not None
        cursor = self.connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL,
                method TEXT NOT NULL,
                body BLOB NULL,
                start INTEGER NOT NULL,
                "end" INTEGER NOT NULL,
                delete_at REAL NOT NULL,
                status_code INTEGER NOT NULL,
                status_message TEXT NOT NULL,
                headers BLOB NULL,
                cache_control_directives BLOB NULL,
                etag TEXT NULL,
                vary BLOB NULL,
                cached_at REAL NOT NULL,
                stale_at REAL NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_entries_lookup ON entries(url, method, start, delete_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_entries_delete_at ON entries(delete_at)")

        self.connection.commit()

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        assert_cache_key(key)
        self._maybe_prune()

        headers: Dict[str, HeaderValue] = {name.lower(): value for name, value in (key.headers or {}).items()}

        byte_range: Optional[ByteRange] = None
        range_header = headers.get("range")
        if range_header is not None:
            if not isinstance(range_header, str):
                # Several Range headers never describe a single stored range.
                return None
            byte_range = ByteRange.from_header(range_header)
            if byte_range is None:
                return None

        connection = self._ensure_connection()
        cursor = connection.cursor()
        cursor.execute(
            f"SELECT {_COLUMNS} FROM entries WHERE url = ? AND method = ? AND start <= ? ORDER BY delete_at ASC",
            (key.url, key.method, byte_range.start if byte_range is not None else 0),
        )

        now = self._clock()
        for row in cursor.fetchall():
            entry = self._row_to_entry(row)

            if now >= entry.delete_at:
                continue

            if byte_range is not None and (byte_range.start != entry.start or byte_range.end != entry.end):
                continue

            if entry.vary and not vary_matches(entry.vary, headers):
                continue

            return entry

        return None

    def set(self, key: CacheKey, value: CacheValue) -> None:
        assert_cache_key(key)
        assert_cache_value(value)

        if value.body is not None and len(value.body) > self.max_entry_size:
            logger.debug(f"Not storing {key.method} {key.url}: body exceeds {self.max_entry_size} bytes")
            return

        self._maybe_prune()
        connection = self._ensure_connection()
        self._evict_if_full(connection)

        connection.execute(
            f"INSERT INTO entries ({_INSERT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                key.url,
                key.method,
                bytes(value.body) if value.body is not None else None,
                value.start,
                value.end,
                value.delete_at,
                value.status_code,
                value.status_message,
                pack(_headers_column(value.headers)),
                pack(value.cache_control_directives),
                value.etag,
                pack(value.vary),
                value.cached_at,
                value.stale_at,
            ),
        )
        connection.commit()
        logger.debug(f"Stored {key.method} {key.url} until {value.delete_at}")

    def delete(self, key: CacheKey) -> None:
        """Remove every entry stored for the key's URL, whatever the method."""
        assert_cache_key(key)
        connection = self._ensure_connection()
        connection.execute("DELETE FROM entries WHERE url = ?", (key.url,))
        connection.commit()

    def prune(self) -> int:
        connection = self._ensure_connection()
        now = self._clock()
        self._last_prune = now
        cursor = connection.execute("DELETE FROM entries WHERE delete_at <= ?", (now,))
        connection.commit()
        if cursor.rowcount:
            logger.debug(f"Pruned {cursor.rowcount} expired entries")
        return cursor.rowcount

    @property
    def size(self) -> int:
        connection = self._ensure_connection()
        (count,) = connection.execute("SELECT COUNT(*) FROM entries").fetchone()
        return int(count)

    def close(self) -> None:
        """Close the connection. Any later use of the store raises `StoreError`."""
        self._closed = True
        if self.connection is not None:
            self.connection.close()
            self.connection = None
            self._initialized = False

    def _maybe_prune(self) -> None:
        now = self._clock()
        if self._last_prune is not None and now - self._last_prune < PRUNE_INTERVAL:
            return
        try:
            self.prune()
        except sqlite3.Error:
            # a failing cleanup must not prevent lookups or writes
            logger.warning("Failed to prune expired cache entries", exc_info=True)

    def _evict_if_full(self, connection: sqlite3.Connection) -> None:
        if self.size < self.max_entry_count:
            return

        if self.prune() > 0 and self.size < self.max_entry_count:
            return

        count = max(1, int(self.max_entry_count * EVICTION_RATIO))
        cursor = connection.execute(
            "DELETE FROM entries WHERE id IN (SELECT id FROM entries ORDER BY cached_at ASC, id ASC LIMIT ?)",
            (count,),
        )
        connection.commit()
        logger.debug(f"Evicted {cursor.rowcount} oldest entries")

    def _row_to_entry(self, row: Tuple[Any, ...]) -> CacheEntry:
        (
            id_,
            url,
            method,
            body,
            start,
            end,
            delete_at,
            status_code,
            status_message,
            headers,
            cache_control_directives,
            etag,
            vary,
            cached_at,
            stale_at,
        ) = row
        return CacheEntry(
            id=id_,
            url=url,
            method=method,
            status_code=status_code,
            status_message=status_message,
            cached_at=cached_at,
            stale_at=stale_at,
            delete_at=delete_at,
            start=start,
            end=end,
            headers=unpack(headers),
            cache_control_directives=unpack(cache_control_directives),
            etag=etag,
            vary=unpack(vary),
            body=body,
        )


def _headers_column(headers: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if headers is None:
        return None
    return {name.lower(): list(value) if isinstance(value, (list, tuple)) else value for name, value in headers.items()}
