# === NAVMAP v1 ===
# {
#   "module": "Fuse.locks",
#   "purpose": "File locking helper serialising SQLite state store writes across processes",
#   "sections": [
#     {"id": "store-lock", "name": "store_lock", "anchor": "function-store-lock", "kind": "function"},
#     {"id": "lock-metrics-snapshot", "name": "lock_metrics_snapshot", "anchor": "function-lock-metrics-snapshot", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""File-based locking for the SQLite state store.

Design Notes
------------
- Locks are implemented with :mod:`filelock`; set ``FUSE_LOCK_USE_SOFT`` to
  opt into soft locks on filesystems without ``fcntl`` support.
- ``FUSE_LOCK_TIMEOUT`` overrides the acquisition timeout (seconds). Breaker
  operations are short, so the default stays small.
- Acquisition and timeout counts are recorded for :func:`lock_metrics_snapshot`.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from filelock import FileLock, SoftFileLock, Timeout

__all__ = ["Timeout", "store_lock", "lock_metrics_snapshot"]

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

_SOFT_LOCK_ENV = "FUSE_LOCK_USE_SOFT"
_LOCK_TIMEOUT_ENV = "FUSE_LOCK_TIMEOUT"
_DEFAULT_TIMEOUT = 2.0
_POLL_INTERVAL = 0.01


@dataclass
class _LockMetrics:
    acquire_total: int = 0
    timeout_total: int = 0
    wait_ms_sum: float = 0.0


_metrics_guard = threading.RLock()
_metrics = _LockMetrics()


def _timeout(override: Optional[float]) -> float:
    if override is not None:
        return float(override)
    raw = os.getenv(_LOCK_TIMEOUT_ENV)
    if raw:
        try:
            value = float(raw)
            if value < 0:
                raise ValueError
            return value
        except ValueError:
            LOGGER.warning("Invalid %s value '%s'; falling back to default.", _LOCK_TIMEOUT_ENV, raw)
    return _DEFAULT_TIMEOUT


def _lock_file_for(target: Path) -> Path:
    return target.with_name(f"{target.name}.lock")


@contextlib.contextmanager
def store_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Hold an exclusive file lock next to ``path`` for the duration of the block."""

    target = Path(path).expanduser().resolve(strict=False)
    lock_cls = SoftFileLock if os.getenv(_SOFT_LOCK_ENV) else FileLock
    lock_timeout = _timeout(timeout)
    lock = lock_cls(str(_lock_file_for(target)), timeout=lock_timeout, thread_local=False)

    start = time.monotonic()
    try:
        lock.acquire(timeout=lock_timeout, poll_interval=_POLL_INTERVAL)
    except Timeout:
        wait_ms = (time.monotonic() - start) * 1000.0
        with _metrics_guard:
            _metrics.timeout_total += 1
            _metrics.wait_ms_sum += wait_ms
        LOGGER.info("lock-timeout wait_ms=%.3f target=%s", wait_ms, target)
        raise

    wait_ms = (time.monotonic() - start) * 1000.0
    with _metrics_guard:
        _metrics.acquire_total += 1
        _metrics.wait_ms_sum += wait_ms
    try:
        yield None
    finally:
        lock.release()


def lock_metrics_snapshot(*, reset: bool = False) -> Dict[str, Union[int, float]]:
    """Return collected lock metrics, optionally clearing them."""

    global _metrics
    with _metrics_guard:
        snapshot: Dict[str, Union[int, float]] = {
            "acquire_total": _metrics.acquire_total,
            "timeout_total": _metrics.timeout_total,
            "wait_ms_sum": _metrics.wait_ms_sum,
        }
        if reset:
            _metrics = _LockMetrics()
        return snapshot
