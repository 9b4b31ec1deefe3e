# === NAVMAP v1 ===
# {
#   "module": "Fuse",
#   "purpose": "Package initialization for Fuse circuit breakers",
#   "sections": []
# }
# === /NAVMAP ===

"""Public API for Fuse: store-backed, failure-rate circuit breakers.

This facade exposes the breaker registry, the guarded-call wrapper, the
configuration loader, and the process-local state store. Backend stores for
Redis and SQLite live in :mod:`Fuse.redis_state_store` and
:mod:`Fuse.sqlite_state_store` and are imported on demand.
"""

from __future__ import annotations

from Fuse.breakers import (
    BreakerClosed,
    BreakerEvent,
    BreakerHalfOpened,
    BreakerOpened,
    BreakerRegistry,
    BreakerStats,
    CircuitBreaker,
    CircuitState,
)
from Fuse.breakers_loader import load_fuse_config
from Fuse.classifier import DefaultFailureClassifier, FailureClassifier, PredicateClassifier
from Fuse.errors import (
    BreakerOpenError,
    ConfigError,
    FuseError,
    RateLimitedError,
    StateStoreError,
)
from Fuse.guard import CircuitBreakerGuard, KillSwitch, guarded
from Fuse.state_store import InMemoryStateStore, SharedStateStore
from Fuse.thresholds import EffectiveConfig, FuseConfig, ServicePolicy, ThresholdResolver

__version__ = "0.1.0"

__all__ = [
    "BreakerClosed",
    "BreakerEvent",
    "BreakerHalfOpened",
    "BreakerOpenError",
    "BreakerOpened",
    "BreakerRegistry",
    "BreakerStats",
    "CircuitBreaker",
    "CircuitBreakerGuard",
    "CircuitState",
    "ConfigError",
    "DefaultFailureClassifier",
    "EffectiveConfig",
    "FailureClassifier",
    "FuseConfig",
    "FuseError",
    "InMemoryStateStore",
    "KillSwitch",
    "PredicateClassifier",
    "RateLimitedError",
    "ServicePolicy",
    "SharedStateStore",
    "StateStoreError",
    "ThresholdResolver",
    "guarded",
    "load_fuse_config",
    "__version__",
]
