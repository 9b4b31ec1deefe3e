# === NAVMAP v1 ===
# {
#   "module": "Fuse.state_store",
#   "purpose": "Shared state store protocol and the process-local implementation",
#   "sections": [
#     {"id": "storelock", "name": "StoreLock", "anchor": "class-storelock", "kind": "class"},
#     {"id": "sharedstatestore", "name": "SharedStateStore", "anchor": "class-sharedstatestore", "kind": "class"},
#     {"id": "inmemorystatestore", "name": "InMemoryStateStore", "anchor": "class-inmemorystatestore", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Shared state store abstraction used by every circuit breaker.

Breakers never hold state in process memory: counters, the state value,
``opened_at`` and the transition/probe locks all live in a
:class:`SharedStateStore`, so many workers (threads, processes, hosts) observe
one logical breaker per dependency.

Implementations
---------------
- :class:`InMemoryStateStore` (this module): thread-safe, single process; the
  default for tests and single-worker hosts.
- :class:`Fuse.redis_state_store.RedisStateStore`: cross-host via Redis.
- :class:`Fuse.sqlite_state_store.SQLiteStateStore`: cross-process via a local
  SQLite file.

Contract
--------
- ``get`` returns ``None`` for absent or expired keys.
- ``increment`` creates the key at 0 before adding one and is atomic.
- ``ttl`` values are seconds; ``None`` means no expiry.
- ``lock(key, ttl)`` returns a fresh handle with its own owner token.
  ``try_acquire`` never blocks; ``release`` only frees a lock the handle owns;
  ``force_release`` frees it regardless of owner.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union

StoreValue = Union[str, int, float]

__all__ = [
    "StoreValue",
    "StoreLock",
    "SharedStateStore",
    "InMemoryStateStore",
]


class StoreLock(Protocol):
    """Non-blocking mutual-exclusion handle with a TTL."""

    def try_acquire(self) -> bool: ...
    def release(self) -> None: ...
    def force_release(self) -> None: ...


class SharedStateStore(Protocol):
    """Key-value store with atomic increments and TTL locks."""

    def get(self, key: str) -> Optional[Any]: ...
    def put(self, key: str, value: StoreValue, ttl: Optional[int] = None) -> None: ...
    def increment(self, key: str, ttl: Optional[int] = None) -> int: ...
    def forget(self, key: str) -> None: ...
    def lock(self, key: str, ttl: int) -> StoreLock: ...


# ────────────────────────────────────────────────────────────────────────────────
# Process-local implementation
# ────────────────────────────────────────────────────────────────────────────────


@dataclass
class _MemoryLock:
    store: "InMemoryStateStore"
    key: str
    ttl: int
    owner: str = field(default_factory=lambda: uuid.uuid4().hex)

    def try_acquire(self) -> bool:
        return self.store._acquire(self.key, self.owner, self.ttl)

    def release(self) -> None:
        self.store._release(self.key, self.owner)

    def force_release(self) -> None:
        self.store._release(self.key, None)


@dataclass
class InMemoryStateStore:
    """Process-local store.

    Expired entries are dropped when next touched, and writes sweep the whole
    map at most once per ``sweep_interval_s`` so keys of past windows do not
    accumulate.
    """

    now_wall: Callable[[], float] = time.time
    sweep_interval_s: float = 60.0
    _next_sweep: float = 0.0
    _values: Dict[str, Tuple[Any, Optional[float]]] = field(default_factory=dict)
    _locks: Dict[str, Tuple[str, float]] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def _expires(self, ttl: Optional[int]) -> Optional[float]:
        if ttl is None:
            return None
        return self.now_wall() + ttl

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self.now_wall():
            del self._values[key]
            return None
        return entry

    def _maybe_sweep(self) -> None:
        now = self.now_wall()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.sweep_interval_s
        for key in [k for k, (_, exp) in self._values.items() if exp is not None and exp <= now]:
            del self._values[key]
        for key in [k for k, (_, exp) in self._locks.items() if exp <= now]:
            del self._locks[key]

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def put(self, key: str, value: StoreValue, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._maybe_sweep()
            self._values[key] = (value, self._expires(ttl))

    def increment(self, key: str, ttl: Optional[int] = None) -> int:
        with self._lock:
            self._maybe_sweep()
            entry = self._live(key)
            current = int(entry[0]) if entry else 0
            expires_at = self._expires(ttl) if ttl is not None else (entry[1] if entry else None)
            self._values[key] = (current + 1, expires_at)
            return current + 1

    def forget(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def lock(self, key: str, ttl: int) -> _MemoryLock:
        return _MemoryLock(self, key, ttl)

    # ── Lock bookkeeping ──────────────────────────────────────────────────────

    def _acquire(self, key: str, owner: str, ttl: int) -> bool:
        with self._lock:
            held = self._locks.get(key)
            if held is not None and held[1] > self.now_wall():
                return False
            self._locks[key] = (owner, self.now_wall() + ttl)
            return True

    def _release(self, key: str, owner: Optional[str]) -> None:
        with self._lock:
            held = self._locks.get(key)
            if held is None:
                return
            if owner is None or held[0] == owner:
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        """Return True while an unexpired lock is held on ``key``."""

        with self._lock:
            held = self._locks.get(key)
            return held is not None and held[1] > self.now_wall()
