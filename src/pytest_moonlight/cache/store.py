"""SQLite cache of instrumented sources.

Instrumenting a file means lexing, analyzing and rewriting it. The result
depends only on the file's path, its content and the rewrite options, so it
is stored under a content-based key and reused by later runs.

A corrupted database is deleted and recreated with a warning. A corrupted
entry is dropped and reported as a miss, which makes the caller
re-instrument the file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from typing import TYPE_CHECKING

from pytest_moonlight.cache.hasher import to_lua_bytes


if TYPE_CHECKING:
    from pathlib import Path


logger = logging.getLogger(__name__)


class InstrumentedSourceStore:
    """SQLite-backed cache for instrumented Lua sources.

    Each entry holds the instrumented text, stored as its raw bytes, and its
    source map as a list of original line numbers (empty for the identity map).

    Example:
        >>> from pathlib import Path
        >>> store = InstrumentedSourceStore(Path('.moonlight_cache/instrumented.db'))
        >>> store.put('key', 'return 1\\n', [])
        >>> store.get('key')
        ('return 1\\n', [])
        >>> store.close()
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        If the database file is corrupted, it is deleted and a fresh
        database is created. A warning is logged in this case.

        Args:
            db_path: Path to the SQLite database file. Parent directories
                     are created if they don't exist.
        """
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = self._open_or_recreate_db()

    @property
    def path(self) -> Path:
        """Return the database location."""
        return self._db_path

    def _open_or_recreate_db(self) -> sqlite3.Connection:
        """Open the database, recreating it if corrupted.

        Returns:
            An open SQLite connection with initialized schema.
        """
        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._init_schema_on_conn(conn)
        except sqlite3.DatabaseError:
            logger.warning(
                'Instrumentation cache corrupted at %s, recreating',
                self._db_path,
            )
            if conn is not None:  # pragma: no branch
                conn.close()
            self._db_path.unlink(missing_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._init_schema_on_conn(conn)
        return conn

    def _init_schema_on_conn(self, conn: sqlite3.Connection) -> None:
        """Create the sources table if it doesn't exist."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sources (
                cache_key TEXT PRIMARY KEY,
                instrumented BLOB NOT NULL,
                source_map TEXT NOT NULL
            )
        """)
        conn.commit()

    def get(self, cache_key: str) -> tuple[str, list[int]] | None:
        """Retrieve an instrumented source.

        Args:
            cache_key: Key built by ContentHasher.cache_key().

        Returns:
            ``(text, source_map)``, or None on a miss or a corrupted entry.
        """
        with self._lock:
            try:
                row = self._conn.execute(
                    'SELECT instrumented, source_map FROM sources WHERE cache_key = ?',
                    (cache_key,),
                ).fetchone()
            except sqlite3.DatabaseError as error:
                logger.warning('Instrumentation cache read failed: %s', error)
                return None
        if row is None:
            return None
        stored, encoded_map = row
        try:
            source_map = json.loads(encoded_map)
        except json.JSONDecodeError:
            source_map = None
        text = stored.decode('utf-8', errors='surrogateescape') if isinstance(stored, bytes) else stored
        if not isinstance(text, str) or not isinstance(source_map, list):
            logger.debug('Dropping corrupted cache entry %r', cache_key)
            self.delete(cache_key)
            return None
        return text, source_map

    def put(self, cache_key: str, text: str, source_map: list[int]) -> None:
        """Store an instrumented source.

        Args:
            cache_key: Key built by ContentHasher.cache_key().
            text: Instrumented text.
            source_map: Original line per instrumented line, or empty.
        """
        with self._lock:
            try:
                self._conn.execute(
                    'INSERT OR REPLACE INTO sources (cache_key, instrumented, source_map) VALUES (?, ?, ?)',
                    (cache_key, to_lua_bytes(text), json.dumps(source_map)),
                )
                self._conn.commit()
            except sqlite3.DatabaseError as error:
                logger.warning('Instrumentation cache write failed: %s', error)

    def delete(self, cache_key: str) -> None:
        """Remove one entry. Failures are logged, not raised."""
        with self._lock:
            try:
                self._conn.execute('DELETE FROM sources WHERE cache_key = ?', (cache_key,))
                self._conn.commit()
            except sqlite3.DatabaseError as error:
                logger.warning('Instrumentation cache delete failed: %s', error)

    def clear(self) -> None:
        """Remove all entries from the cache."""
        with self._lock:
            self._conn.execute('DELETE FROM sources')
            self._conn.commit()

    def count(self) -> int:
        """Return the number of cached entries."""
        with self._lock:
            cursor = self._conn.execute('SELECT COUNT(*) FROM sources')
            count: int = cursor.fetchone()[0]
            return count

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> InstrumentedSourceStore:
        """Context manager entry."""
        return self

    def __exit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> None:
        """Context manager exit - closes the connection."""
        self.close()
