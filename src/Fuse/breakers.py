# === NAVMAP v1 ===
# {
#   "module": "Fuse.breakers",
#   "purpose": "Store-backed failure-rate circuit breakers and their registry",
#   "sections": [
#     {"id": "circuitstate", "name": "CircuitState", "anchor": "class-circuitstate", "kind": "class"},
#     {"id": "breakerevent", "name": "BreakerEvent", "anchor": "class-breakerevent", "kind": "class"},
#     {"id": "breakerstats", "name": "BreakerStats", "anchor": "class-breakerstats", "kind": "class"},
#     {"id": "trailingstats", "name": "TrailingStats", "anchor": "class-trailingstats", "kind": "class"},
#     {"id": "normalize-service-key", "name": "normalize_service_key", "anchor": "function-normalize-service-key", "kind": "function"},
#     {"id": "circuitbreaker", "name": "CircuitBreaker", "anchor": "class-circuitbreaker", "kind": "class"},
#     {"id": "breakerregistry", "name": "BreakerRegistry", "anchor": "class-breakerregistry", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""
Failure-rate circuit breakers whose state lives in a shared store.

Each dependency ("service") gets one logical breaker. All of its state is kept
in a :class:`Fuse.state_store.SharedStateStore` under ``<prefix>:<service>:*``
keys so every worker sees the same breaker:

- ``state``: ``closed`` | ``open`` | ``half_open`` (absent reads as closed)
- ``opened_at``: integer epoch seconds, present while open
- ``attempts:<YYYYmmddHHMM>`` / ``failures:<YYYYmmddHHMM>``: per-minute counters
  with a TTL of two windows
- ``transition`` / ``probe``: TTL locks

State machine:
  - closed → open: ``attempts >= min_requests`` and failure rate ``>= threshold``
  - open → half_open: timeout elapsed, observed lazily by the next read
  - half_open → closed: the probe succeeded
  - half_open → open: the probe failed (no min_requests gate)

Transitions run under a short TTL lock and re-check the recorded state after
acquiring it. A caller that cannot get the lock skips the transition; whoever
holds it is already performing it.

Example:
  ```python
  from Fuse.breakers import BreakerRegistry
  from Fuse.thresholds import FuseConfig

  registry = BreakerRegistry(FuseConfig())
  breaker = registry.get("stripe")
  if not breaker.is_open():
      try:
          charge()
      except Exception as exc:
          breaker.record_failure(exc)
          raise
      else:
          breaker.record_success()
  ```
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Optional, Tuple

from Fuse.classifier import DefaultFailureClassifier, FailureClassifier
from Fuse.state_store import InMemoryStateStore, SharedStateStore, StoreLock
from Fuse.thresholds import EffectiveConfig, FuseConfig, ThresholdResolver

__all__ = [
    "CircuitState",
    "BreakerEvent",
    "BreakerOpened",
    "BreakerHalfOpened",
    "BreakerClosed",
    "BreakerListener",
    "BreakerStats",
    "TrailingStats",
    "CircuitBreaker",
    "BreakerRegistry",
    "normalize_service_key",
]

LOGGER = logging.getLogger(__name__)

WINDOW_FORMAT = "%Y%m%d%H%M"
WINDOW_SECONDS = 60

# ────────────────────────────────────────────────────────────────────────────────
# States & events
# ────────────────────────────────────────────────────────────────────────────────


class CircuitState(str, Enum):
    """Breaker states as stored in the shared store."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerEvent:
    """Base for notifications fired synchronously at transition points."""

    service: str
    state: ClassVar[CircuitState]


@dataclass(frozen=True)
class BreakerOpened(BreakerEvent):
    failure_rate: float = 0.0
    attempts: int = 0
    failures: int = 0
    state: ClassVar[CircuitState] = CircuitState.OPEN


@dataclass(frozen=True)
class BreakerHalfOpened(BreakerEvent):
    state: ClassVar[CircuitState] = CircuitState.HALF_OPEN


@dataclass(frozen=True)
class BreakerClosed(BreakerEvent):
    state: ClassVar[CircuitState] = CircuitState.CLOSED


BreakerListener = Callable[[BreakerEvent], None]


@dataclass(frozen=True)
class BreakerStats:
    """Read-only snapshot of the current window plus resolved config."""

    state: CircuitState
    attempts: int
    failures: int
    failure_rate: float
    opened_at: Optional[int]
    recovery_at: Optional[int]
    timeout: int
    threshold: int
    min_requests: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "failures": self.failures,
            "failure_rate": self.failure_rate,
            "opened_at": self.opened_at,
            "recovery_at": self.recovery_at,
            "timeout": self.timeout,
            "threshold": self.threshold,
            "min_requests": self.min_requests,
        }


@dataclass(frozen=True)
class TrailingStats:
    """Counters summed over the current and the preceding window."""

    attempts: int
    failures: int
    failure_rate: float
    windows: Tuple[str, str]


def _rate(failures: int, attempts: int) -> float:
    return round(failures / attempts * 100, 1) if attempts > 0 else 0.0


def _as_int(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def normalize_service_key(service: str) -> str:
    """Canonical breaker key for a service name: stripped and lowercased."""

    key = service.strip().lower()
    if not key:
        raise ValueError("service name must not be empty")
    return key


# ────────────────────────────────────────────────────────────────────────────────
# CircuitBreaker
# ────────────────────────────────────────────────────────────────────────────────


class CircuitBreaker:
    """
    One dependency's breaker. Instances are cheap views over the shared store;
    two instances for the same service in different processes are the same
    breaker.
    """

    def __init__(
        self,
        service: str,
        store: SharedStateStore,
        resolver: ThresholdResolver,
        *,
        classifier: Optional[FailureClassifier] = None,
        listeners: Iterable[BreakerListener] = (),
        now_wall: Callable[[], float] = time.time,
        key_prefix: str = "fuse",
        window_ttl_s: int = 120,
        transition_lock_ttl_s: int = 5,
        probe_lock_ttl_s: int = 5,
    ) -> None:
        self.service = service
        self.store = store
        self.resolver = resolver
        self.classifier = classifier or DefaultFailureClassifier()
        self._listeners: List[BreakerListener] = list(listeners)
        self._now = now_wall
        self._prefix = key_prefix
        self._window_ttl = window_ttl_s
        self._transition_ttl = transition_lock_ttl_s
        self._probe_ttl = probe_lock_ttl_s

    # ── Keys, clock, config ───────────────────────────────────────────────────

    def key(self, suffix: str) -> str:
        return f"{self._prefix}:{self.service}:{suffix}"

    def current_window(self, offset_s: int = 0) -> str:
        return datetime.fromtimestamp(self._now() + offset_s).strftime(WINDOW_FORMAT)

    def effective_config(self) -> EffectiveConfig:
        return self.resolver.resolve(self.service)

    def probe_lock(self) -> StoreLock:
        """Fresh handle on the single-probe lock used while half-open."""
        return self.store.lock(self.key("probe"), self._probe_ttl)

    # ── Observers ─────────────────────────────────────────────────────────────

    def subscribe(self, listener: BreakerListener) -> None:
        """Register a callable invoked synchronously with every transition event."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: BreakerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: BreakerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception(
                    "breaker listener failed service=%s event=%s", self.service, type(event).__name__
                )

    # ── State reads ───────────────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        raw = self.store.get(self.key("state"))
        if raw is None:
            return CircuitState.CLOSED
        try:
            return CircuitState(str(raw))
        except ValueError:
            LOGGER.warning("unknown breaker state %r for service=%s; treating as closed", raw, self.service)
            return CircuitState.CLOSED

    def _opened_at(self) -> Optional[int]:
        return _as_int(self.store.get(self.key("opened_at")))

    def _timeout_elapsed(self) -> bool:
        opened_at = self._opened_at()
        if opened_at is None:
            # Open without a timestamp (interrupted write): let it recover.
            return True
        return int(self._now()) - opened_at >= self.effective_config().timeout_s

    def is_open(self) -> bool:
        """True while open and inside the timeout; moves to half-open once it elapses."""

        if self.state is not CircuitState.OPEN:
            return False
        if self._timeout_elapsed():
            self._transition(CircuitState.HALF_OPEN)
            return False
        return True

    def is_half_open(self) -> bool:
        return self.state is CircuitState.HALF_OPEN

    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    # ── Outcome reporting ─────────────────────────────────────────────────────

    def record_success(self) -> None:
        """Count a successful call; a success while half-open closes the breaker.

        Also frees the probe lock so the next half-open caller is not blocked.
        """
        self._increment("attempts")

        if self.state is CircuitState.OPEN:
            if self._timeout_elapsed():
                self._transition(CircuitState.HALF_OPEN)
            else:
                # Not a real probe; the window has not closed yet.
                self._release_probe()
                return

        if self.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

        self._release_probe()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        """Count a failed call and open the breaker when the window breaches.

        Errors the classifier rejects only count as attempts. A failure while
        half-open reopens immediately, without the min_requests gate.
        """
        if exc is not None and not self.classifier.should_count(exc):
            self._increment("attempts")
            return

        if self.state is CircuitState.OPEN:
            if not self._timeout_elapsed():
                return
            self._transition(CircuitState.HALF_OPEN)

        if self.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, failure_rate=100.0, attempts=1, failures=1)
            self._release_probe()
            return

        attempts = self._increment("attempts")
        failures = self._increment("failures")
        rate = failures / attempts * 100 if attempts > 0 else 0.0

        cfg = self.effective_config()
        if attempts >= cfg.min_requests and rate >= cfg.threshold:
            self._transition(
                CircuitState.OPEN, failure_rate=rate, attempts=attempts, failures=failures
            )

    # ── Introspection ─────────────────────────────────────────────────────────

    def _count(self, name: str, window: str) -> int:
        return _as_int(self.store.get(self.key(f"{name}:{window}"))) or 0

    def stats(self) -> BreakerStats:
        window = self.current_window()
        attempts = self._count("attempts", window)
        failures = self._count("failures", window)
        opened_at = self._opened_at()
        cfg = self.effective_config()
        return BreakerStats(
            state=self.state,
            attempts=attempts,
            failures=failures,
            failure_rate=_rate(failures, attempts),
            opened_at=opened_at,
            recovery_at=opened_at + cfg.timeout_s if opened_at is not None else None,
            timeout=cfg.timeout_s,
            threshold=cfg.threshold,
            min_requests=cfg.min_requests,
        )

    def trailing_stats(self) -> TrailingStats:
        windows = (self.current_window(-WINDOW_SECONDS), self.current_window())
        attempts = sum(self._count("attempts", w) for w in windows)
        failures = sum(self._count("failures", w) for w in windows)
        return TrailingStats(
            attempts=attempts,
            failures=failures,
            failure_rate=_rate(failures, attempts),
            windows=windows,
        )

    # ── Administrative ────────────────────────────────────────────────────────

    def reset(self) -> None:
        """Return to closed with empty counters, whatever the prior state."""

        window = self.current_window()
        self.store.forget(self.key("state"))
        self.store.forget(self.key("opened_at"))
        self.store.forget(self.key(f"attempts:{window}"))
        self.store.forget(self.key(f"failures:{window}"))
        self._release_probe()
        self.store.lock(self.key("transition"), self._transition_ttl).force_release()
        LOGGER.info("breaker reset service=%s", self.service)

    def trip(self) -> None:
        """Force the breaker open (maintenance windows, operator action)."""

        stats = self.stats()
        self._transition(
            CircuitState.OPEN,
            failure_rate=stats.failure_rate,
            attempts=stats.attempts,
            failures=stats.failures,
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    def _increment(self, name: str) -> int:
        return self.store.increment(self.key(f"{name}:{self.current_window()}"), ttl=self._window_ttl)

    def _release_probe(self) -> None:
        self.probe_lock().force_release()

    def _transition(
        self,
        new_state: CircuitState,
        *,
        failure_rate: float = 0.0,
        attempts: int = 0,
        failures: int = 0,
    ) -> None:
        lock = self.store.lock(self.key("transition"), self._transition_ttl)
        if not lock.try_acquire():
            LOGGER.debug(
                "breaker transition skipped (lock held) service=%s to=%s",
                self.service,
                new_state.value,
            )
            return

        try:
            old_state = self.state
            if old_state is new_state:
                return

            # opened_at goes first so a failed write never leaves an open state
            # without a timestamp.
            if new_state is CircuitState.OPEN:
                self.store.put(self.key("opened_at"), int(self._now()))
            elif new_state is CircuitState.CLOSED:
                self.store.forget(self.key("opened_at"))
            self.store.put(self.key("state"), new_state.value)

            LOGGER.info(
                "breaker transition service=%s from=%s to=%s",
                self.service,
                old_state.value,
                new_state.value,
            )

            event: BreakerEvent
            if new_state is CircuitState.OPEN:
                event = BreakerOpened(
                    self.service,
                    failure_rate=round(float(failure_rate), 1),
                    attempts=attempts,
                    failures=failures,
                )
            elif new_state is CircuitState.HALF_OPEN:
                event = BreakerHalfOpened(self.service)
            else:
                event = BreakerClosed(self.service)
            self._notify(event)
        finally:
            lock.release()


# ────────────────────────────────────────────────────────────────────────────────
# Registry
# ────────────────────────────────────────────────────────────────────────────────

ListenerFactory = Callable[[str], Optional[BreakerListener]]


class BreakerRegistry:
    """
    Hands out one :class:`CircuitBreaker` per normalized service name, all
    sharing the same store, resolver and classifier.

    Typical usage:
        reg = BreakerRegistry(config, store=RedisStateStore(dsn))
        breaker = reg.get("Stripe")  # same breaker as reg.get("stripe")
    """

    def __init__(
        self,
        config: FuseConfig,
        store: Optional[SharedStateStore] = None,
        *,
        classifier: Optional[FailureClassifier] = None,
        listener_factory: Optional[ListenerFactory] = None,
        now_wall: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store if store is not None else InMemoryStateStore(now_wall=now_wall)
        self.resolver = ThresholdResolver(config, now_wall=now_wall)
        self.classifier = classifier or DefaultFailureClassifier(
            excluded_statuses=config.excluded_statuses
        )
        self.listener_factory = listener_factory
        self._now = now_wall
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get(self, service: str) -> CircuitBreaker:
        key = normalize_service_key(service)
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is not None:
                return breaker
            listeners: List[BreakerListener] = []
            if self.listener_factory:
                listener = self.listener_factory(key)
                if listener is not None:
                    listeners.append(listener)
            breaker = CircuitBreaker(
                key,
                self.store,
                self.resolver,
                classifier=self.classifier,
                listeners=listeners,
                now_wall=self._now,
                key_prefix=self.config.key_prefix,
                window_ttl_s=self.config.window_ttl_s,
                transition_lock_ttl_s=self.config.transition_lock_ttl_s,
                probe_lock_ttl_s=self.config.probe_lock_ttl_s,
            )
            self._breakers[key] = breaker
            return breaker

    def known_services(self) -> List[str]:
        """Configured services plus any seen through :meth:`get`."""
        with self._lock:
            return sorted(set(self.config.services) | set(self._breakers))

    def reset_all(self) -> None:
        for service in self.known_services():
            self.get(service).reset()
