# === NAVMAP v1 ===
# {
#   "module": "Fuse.guard",
#   "purpose": "Guarded-call wrapper composing breaker admission with the protected call",
#   "sections": [
#     {"id": "killswitch", "name": "KillSwitch", "anchor": "class-killswitch", "kind": "class"},
#     {"id": "circuitbreakerguard", "name": "CircuitBreakerGuard", "anchor": "class-circuitbreakerguard", "kind": "class"},
#     {"id": "guarded", "name": "guarded", "anchor": "function-guarded", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Guarded-call wrapper around :class:`Fuse.breakers.CircuitBreaker`.

Admission rules, evaluated before every call:

1. Kill switch off → call through; the breaker is not consulted at all.
2. Breaker open → raise :class:`BreakerOpenError` (``reason="open"``) carrying
   ``retry_after_s`` so queue workers can requeue the job.
3. Breaker half-open → try the probe lock once. Losing the race raises
   :class:`BreakerOpenError` (``reason="probe_in_flight"``); winning admits the
   one probe and the handle is released on every exit path.
4. Otherwise → call through.

The outcome is reported to the breaker and then returned or re-raised
unchanged; the guard never alters a protected call's result.

Typical Usage:
    guard = CircuitBreakerGuard(registry, kill_switch=KillSwitch(store, config))
    try:
        receipt = guard.call("stripe", client.charge, amount=100)
    except BreakerOpenError as exc:
        job.release(exc.retry_after_s)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from Fuse.breakers import BreakerRegistry, CircuitBreaker
from Fuse.errors import BreakerOpenError, StateStoreError
from Fuse.state_store import SharedStateStore, StoreLock
from Fuse.thresholds import FuseConfig

__all__ = ["KillSwitch", "CircuitBreakerGuard", "guarded"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_TRUTHY = {"1", "true", "yes", "y", "on"}


class KillSwitch:
    """Process-wide on/off switch checked ahead of configuration.

    A value stored under ``key`` wins over ``config.enabled``; clearing it
    returns control to configuration.
    """

    def __init__(self, store: SharedStateStore, config: FuseConfig, *, key: Optional[str] = None):
        self.store = store
        self.config = config
        self.key = key or f"{config.key_prefix}:enabled"

    def override(self) -> Optional[bool]:
        raw = self.store.get(self.key)
        if raw is None:
            return None
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUTHY

    def is_enabled(self) -> bool:
        value = self.override()
        return self.config.enabled if value is None else value

    def enable(self) -> None:
        self.store.put(self.key, 1)

    def disable(self) -> None:
        self.store.put(self.key, 0)

    def clear(self) -> None:
        self.store.forget(self.key)


class CircuitBreakerGuard:
    """Run callables under the breaker registered for a service."""

    def __init__(
        self,
        registry: BreakerRegistry,
        *,
        kill_switch: Optional[KillSwitch] = None,
        fail_open: bool = False,
    ) -> None:
        self.registry = registry
        self.kill_switch = kill_switch
        self.fail_open = fail_open

    # ── Admission ─────────────────────────────────────────────────────────────

    def _enabled(self) -> bool:
        if self.kill_switch is None:
            return self.registry.config.enabled
        return self.kill_switch.is_enabled()

    def _admit(self, service: str) -> tuple[Optional[CircuitBreaker], Optional[StoreLock]]:
        """Return ``(breaker, probe_lock)``; ``breaker`` is None when bypassed.

        Raises BreakerOpenError when the call must not go through.
        """

        try:
            if not self._enabled():
                return None, None
            breaker = self.registry.get(service)
            retry_after = self.registry.config.release_delay_s
            if breaker.is_open():
                raise BreakerOpenError(breaker.service, reason="open", retry_after_s=retry_after)
            if breaker.is_half_open():
                probe = breaker.probe_lock()
                if not probe.try_acquire():
                    raise BreakerOpenError(
                        breaker.service, reason="probe_in_flight", retry_after_s=retry_after
                    )
                return breaker, probe
            return breaker, None
        except StateStoreError as exc:
            if not self.fail_open:
                raise
            LOGGER.warning("breaker store unavailable, admitting call service=%s: %s", service, exc)
            return None, None

    def _report(self, breaker: CircuitBreaker, exc: Optional[BaseException]) -> None:
        try:
            if exc is None:
                breaker.record_success()
            else:
                breaker.record_failure(exc)
        except StateStoreError as store_exc:
            if not self.fail_open:
                raise
            LOGGER.warning(
                "breaker store unavailable, outcome not recorded service=%s: %s",
                breaker.service,
                store_exc,
            )

    def _release(self, probe: Optional[StoreLock]) -> None:
        if probe is None:
            return
        try:
            probe.release()
        except StateStoreError as exc:
            if not self.fail_open:
                raise
            LOGGER.warning("probe lock release failed: %s", exc)

    # ── Public API ────────────────────────────────────────────────────────────

    def call(self, service: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` under the breaker for ``service`` and report its outcome.

        Raises BreakerOpenError without calling ``fn`` when the breaker is open
        or its half-open probe is taken. Otherwise returns or re-raises
        whatever ``fn`` does.
        """
        breaker, probe = self._admit(service)
        if breaker is None:
            return fn(*args, **kwargs)
        try:
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                self._report(breaker, exc)
                raise
            self._report(breaker, None)
            return result
        finally:
            self._release(probe)

    async def acall(
        self, service: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Async variant of :meth:`call` for coroutine functions.

        Store access is blocking (socket reads, file locks), so admission and
        outcome reporting run in a worker thread.
        """

        breaker, probe = await asyncio.to_thread(self._admit, service)
        if breaker is None:
            return await fn(*args, **kwargs)
        try:
            try:
                result = await fn(*args, **kwargs)
            except Exception as exc:
                await asyncio.to_thread(self._report, breaker, exc)
                raise
            await asyncio.to_thread(self._report, breaker, None)
            return result
        finally:
            if probe is not None:
                await asyncio.to_thread(self._release, probe)


def guarded(guard: CircuitBreakerGuard, service: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of :meth:`CircuitBreakerGuard.call`."""

    def _decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def _wrapped(*args: Any, **kwargs: Any) -> T:
            return guard.call(service, func, *args, **kwargs)

        return _wrapped

    return _decorator
