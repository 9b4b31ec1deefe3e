# === NAVMAP v1 ===
# {
#   "module": "Fuse.sqlite_state_store",
#   "purpose": "Cross-process shared state store backed by SQLite",
#   "sections": [
#     {"id": "sqlitelock", "name": "SQLiteLock", "anchor": "class-sqlitelock", "kind": "class"},
#     {"id": "sqlitestatestore", "name": "SQLiteStateStore", "anchor": "class-sqlitestatestore", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Cross-process shared state store backed by SQLite.

This store lets several worker processes on one machine share breaker state
through a single database file. Values are JSON-encoded so integers and
strings round-trip with their type; expiry is stored as a wall-clock epoch and
enforced on read.

Key Design:
- Uses PRAGMA journal_mode=WAL for concurrent readers
- Writes run inside ``BEGIN IMMEDIATE`` while holding :func:`Fuse.locks.store_lock`
- Locks are rows in ``fuse_locks`` with an owner token and an expiry, so a
  crashed holder stops blocking others once its TTL passes
- Backend errors surface as :class:`Fuse.errors.StateStoreError`

Typical Usage:
    from pathlib import Path
    from Fuse.sqlite_state_store import SQLiteStateStore

    store = SQLiteStateStore(Path("tmp/fuse.sqlite"))
    store.increment("fuse:stripe:attempts:202501011030", ttl=120)
    lock = store.lock("fuse:stripe:probe", ttl=5)
    if lock.try_acquire():
        ...
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ContextManager, Iterator, Optional

from Fuse.errors import StateStoreError
from Fuse.locks import Timeout, store_lock
from Fuse.state_store import StoreValue

__all__ = ["SQLiteLock", "SQLiteStateStore"]


# ────────────────────────────────────────────────────────────────────────────────
# Database Schema (DDL)
# ────────────────────────────────────────────────────────────────────────────────

_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA busy_timeout=4000;
CREATE TABLE IF NOT EXISTS fuse_kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,          -- JSON-encoded scalar
    expires_at REAL               -- UTC epoch seconds, NULL = no expiry
);
CREATE TABLE IF NOT EXISTS fuse_locks (
    key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_kv_expires ON fuse_kv(expires_at);
"""


@dataclass
class SQLiteLock:
    """Row-based TTL lock handle; each handle carries its own owner token."""

    store: "SQLiteStateStore"
    key: str
    ttl: int
    owner: str = field(default_factory=lambda: uuid.uuid4().hex)

    def try_acquire(self) -> bool:
        return self.store._acquire(self.key, self.owner, self.ttl)

    def release(self) -> None:
        self.store._release(self.key, self.owner)

    def force_release(self) -> None:
        self.store._release(self.key, None)


# ────────────────────────────────────────────────────────────────────────────────
# SQLiteStateStore
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class SQLiteStateStore:
    """
    Shared state store in a SQLite file.

    Parameters
    ----------
    db_path : Path
        Path to SQLite database file. Directories are created if missing.
    lock_ctx : Callable[[Path], ContextManager]
        Context manager for cross-process write serialization.
        Defaults to :func:`Fuse.locks.store_lock`.
    now_wall : Callable[[], float]
        Function returning wall-clock time (default: time.time).
    prune_interval_s : float
        Minimum seconds between the expired-row sweeps run from :meth:`increment`.
    """

    db_path: Path
    lock_ctx: Callable[[Path], ContextManager] = store_lock  # type: ignore[assignment]
    now_wall: Callable[[], float] = time.time
    prune_interval_s: float = 60.0
    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self._next_prune = 0.0
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._guard = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,  # explicit transactions only
                check_same_thread=False,
            )
            for stmt in _DDL.strip().split(";\n"):
                if stmt.strip():
                    self._conn.execute(stmt)
        except sqlite3.Error as exc:
            raise StateStoreError(f"cannot open state store at {self.db_path}: {exc}") from exc

    @contextlib.contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write transaction across threads and processes."""

        try:
            with self._guard, self.lock_ctx(self.db_path):
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
        except (sqlite3.Error, Timeout) as exc:
            raise StateStoreError(f"state store write failed: {exc}") from exc

    def _expires(self, ttl: Optional[int]) -> Optional[float]:
        return None if ttl is None else self.now_wall() + ttl

    # ── SharedStateStore API ──────────────────────────────────────────────────

    def get(self, key: str) -> Optional[Any]:
        try:
            with self._guard:
                row = self._conn.execute(
                    "SELECT value, expires_at FROM fuse_kv WHERE key=?", (key,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StateStoreError(f"state store read failed: {exc}") from exc
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and float(expires_at) <= self.now_wall():
            return None
        return json.loads(value)

    def put(self, key: str, value: StoreValue, ttl: Optional[int] = None) -> None:
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO fuse_kv(key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    expires_at=excluded.expires_at
                """,
                (key, json.dumps(value), self._expires(ttl)),
            )

    def increment(self, key: str, ttl: Optional[int] = None) -> int:
        now = self.now_wall()
        with self._write() as conn:
            row = conn.execute(
                "SELECT value, expires_at FROM fuse_kv WHERE key=?", (key,)
            ).fetchone()
            current = 0
            expires_at = None
            if row is not None and (row[1] is None or float(row[1]) > now):
                current = int(json.loads(row[0]))
                expires_at = row[1]
            if ttl is not None:
                expires_at = now + ttl
            conn.execute(
                """
                INSERT INTO fuse_kv(key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    expires_at=excluded.expires_at
                """,
                (key, json.dumps(current + 1), expires_at),
            )
        if now >= self._next_prune:
            # prune_expired takes the file lock itself, so it runs after _write().
            self._next_prune = now + self.prune_interval_s
            self.prune_expired()
        return current + 1

    def forget(self, key: str) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM fuse_kv WHERE key=?", (key,))

    def lock(self, key: str, ttl: int) -> SQLiteLock:
        return SQLiteLock(self, key, ttl)

    # ── Lock bookkeeping ──────────────────────────────────────────────────────

    def _acquire(self, key: str, owner: str, ttl: int) -> bool:
        now = self.now_wall()
        with self._write() as conn:
            row = conn.execute("SELECT expires_at FROM fuse_locks WHERE key=?", (key,)).fetchone()
            if row is not None and float(row[0]) > now:
                return False
            conn.execute(
                """
                INSERT INTO fuse_locks(key, owner, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    owner=excluded.owner,
                    expires_at=excluded.expires_at
                """,
                (key, owner, now + ttl),
            )
        return True

    def _release(self, key: str, owner: Optional[str]) -> None:
        with self._write() as conn:
            if owner is None:
                conn.execute("DELETE FROM fuse_locks WHERE key=?", (key,))
            else:
                conn.execute("DELETE FROM fuse_locks WHERE key=? AND owner=?", (key, owner))

    # ── Maintenance ───────────────────────────────────────────────────────────

    def prune_expired(self) -> int:
        """Delete expired values and locks. Returns the number of rows removed."""

        now = self.now_wall()
        with self._write() as conn:
            values = conn.execute(
                "DELETE FROM fuse_kv WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
            ).rowcount
            locks = conn.execute("DELETE FROM fuse_locks WHERE expires_at <= ?", (now,)).rowcount
        return (values or 0) + (locks or 0)

    def close(self) -> None:
        """Close the database connection."""
        with self._guard:
            self._conn.close()
