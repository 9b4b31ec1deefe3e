# === NAVMAP v1 ===
# {
#   "module": "Fuse.errors",
#   "purpose": "Exception taxonomy shared by breakers, stores, and the guard",
#   "sections": [
#     {"id": "fuseerror", "name": "FuseError", "anchor": "class-fuseerror", "kind": "class"},
#     {"id": "breakeropenerror", "name": "BreakerOpenError", "anchor": "class-breakeropenerror", "kind": "class"},
#     {"id": "ratelimitederror", "name": "RateLimitedError", "anchor": "class-ratelimitederror", "kind": "class"},
#     {"id": "statestoreerror", "name": "StateStoreError", "anchor": "class-statestoreerror", "kind": "class"},
#     {"id": "configerror", "name": "ConfigError", "anchor": "class-configerror", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Exception taxonomy for Fuse circuit breakers.

Responsibilities
----------------
- :class:`BreakerOpenError` is the short-circuit signal raised by the guard
  when a dependency is open or its single half-open probe is already in flight.
  It subclasses :class:`pybreaker.CircuitBreakerError` so hosts already
  handling pybreaker-protected calls need no extra ``except`` clause.
- :class:`RateLimitedError` lets protected calls signal backpressure without
  feeding the failure tally.
- :class:`StateStoreError` wraps backend failures (Redis, SQLite, lock files)
  so hosts can choose fail-open or fail-closed behaviour in one place.
"""

from __future__ import annotations

from typing import Optional

import pybreaker

__all__ = [
    "FuseError",
    "BreakerOpenError",
    "RateLimitedError",
    "StateStoreError",
    "ConfigError",
]


class FuseError(Exception):
    """Base class for all Fuse errors."""


class BreakerOpenError(FuseError, pybreaker.CircuitBreakerError):
    """Raised when a guarded call is rejected without reaching the dependency."""

    def __init__(
        self,
        service: str,
        *,
        reason: str = "open",
        retry_after_s: Optional[float] = None,
    ) -> None:
        self.service = service
        self.reason = reason
        self.retry_after_s = retry_after_s
        message = f"service={service} breaker={reason}"
        if retry_after_s is not None:
            message += f" retry_after_s={retry_after_s:g}"
        super().__init__(message)


class RateLimitedError(FuseError):
    """Raised by a protected call when the dependency answered with backpressure."""

    def __init__(self, message: str = "rate limited", *, retry_after_s: Optional[float] = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s
        self.status_code = 429


class StateStoreError(FuseError):
    """The shared state store could not complete an operation."""


class ConfigError(FuseError, ValueError):
    """Breaker configuration failed validation."""
