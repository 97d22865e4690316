"""
TTL key-value state for credentials and job correlation records.

Webhook invocations are stateless, so anything one invocation must hand to a
later one (a cached bearer token, a pending audit job) lives here.  Two
backends share the same ``get``/``put``/``delete`` contract:

- InMemoryStateStore: process-local dictionary, used in tests and single-worker runs
- SqliteStateStore: file-backed SQLite table that survives restarts

Expired entries are never returned; they are removed lazily on access.
Neither backend offers a read-modify-write transaction across calls.
"""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

DEFAULT_DB_PATH = Path("data/state.db")


class StateStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def put(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> bool: ...


class InMemoryStateStore:
    """Dictionary-backed store; values are JSON round-tripped to match the SQLite backend."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return json.loads(payload)

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (json.dumps(value), self._clock() + ttl_seconds)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None


class SqliteStateStore:
    """
    SQLite table of JSON values with an absolute expiry timestamp.

    Thread-safe: SQLite handles concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, clock: Callable[[], float] = time.time):
        self.db_path = Path(db_path)
        self._clock = clock
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_state_expires_at
                ON state(expires_at)
            """)

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value, expires_at FROM state WHERE key = ?", (key,)
            ).fetchone()

            if not row:
                return None

            if row["expires_at"] <= now:
                conn.execute("DELETE FROM state WHERE key = ?", (key,))
                return None

            return json.loads(row["value"])

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO state (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), self._clock() + ttl_seconds),
            )

    def delete(self, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM state WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def purge_expired(self) -> int:
        """Remove every expired row; returns the number removed."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM state WHERE expires_at <= ?", (self._clock(),))
            return cursor.rowcount


def create_state_store(backend: str, db_path: Optional[str] = None) -> StateStore:
    if backend == "memory":
        return InMemoryStateStore()
    if backend == "sqlite":
        return SqliteStateStore(Path(db_path) if db_path else DEFAULT_DB_PATH)
    raise ValueError(f"Unknown state backend: {backend}")
