# === NAVMAP v1 ===
# {
#   "module": "Fuse.breaker_listener",
#   "purpose": "Telemetry listener for circuit breaker state transitions",
#   "sections": [
#     {"id": "breakertelemetrysink", "name": "BreakerTelemetrySink", "anchor": "class-breakertelemetrysink", "kind": "class"},
#     {"id": "loggingtelemetrysink", "name": "LoggingTelemetrySink", "anchor": "class-loggingtelemetrysink", "kind": "class"},
#     {"id": "breakerlistenerconfig", "name": "BreakerListenerConfig", "anchor": "class-breakerlistenerconfig", "kind": "class"},
#     {"id": "breakertelemetrylistener", "name": "BreakerTelemetryListener", "anchor": "class-breakertelemetrylistener", "kind": "class"},
#     {"id": "telemetry-listener-factory", "name": "telemetry_listener_factory", "anchor": "function-telemetry-listener-factory", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Telemetry listener for circuit breaker state transitions.

This module provides a breaker listener that emits structured telemetry
events for every transition a breaker performs.

Typical Usage:
    from Fuse.breaker_listener import (
        BreakerTelemetryListener, BreakerListenerConfig, LoggingTelemetrySink
    )

    listener = BreakerTelemetryListener(LoggingTelemetrySink(), BreakerListenerConfig(
        run_id="worker-7", service="stripe"
    ))
    registry.get("stripe").subscribe(listener)

    # Or for every breaker a registry creates:
    registry = BreakerRegistry(config, listener_factory=telemetry_listener_factory(sink, "worker-7"))
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from Fuse.breakers import BreakerEvent, BreakerOpened

LOGGER = logging.getLogger(__name__)

_EVENT_TYPES = {
    "open": "breaker_opened",
    "half_open": "breaker_half_open",
    "closed": "breaker_closed",
}


class BreakerTelemetrySink(Protocol):
    """Protocol for emitting breaker telemetry events."""

    def emit(self, event: Mapping[str, Any]) -> None: ...


class LoggingTelemetrySink:
    """Write telemetry events as single-line JSON through :mod:`logging`."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.logger = logger or LOGGER
        self.level = level

    def emit(self, event: Mapping[str, Any]) -> None:
        self.logger.log(self.level, json.dumps(dict(event), sort_keys=True, default=str))


@dataclass
class BreakerListenerConfig:
    """Configuration for a breaker listener."""

    run_id: str
    service: str


class BreakerTelemetryListener:
    """Emits one telemetry payload per transition of a single breaker."""

    def __init__(
        self,
        sink: BreakerTelemetrySink,
        cfg: BreakerListenerConfig,
        *,
        now_wall: Callable[[], float] = time.time,
    ):
        self.sink = sink
        self.cfg = cfg
        self._now = now_wall

    def __call__(self, event: BreakerEvent) -> None:
        payload: dict[str, Any] = {
            "event_type": _EVENT_TYPES[event.state.value],
            "ts": self._now(),
            "run_id": self.cfg.run_id,
            "service": event.service,
            "state": event.state.value,
        }
        if isinstance(event, BreakerOpened):
            payload.update(
                failure_rate=event.failure_rate,
                attempts=event.attempts,
                failures=event.failures,
            )
        self.sink.emit(payload)


def telemetry_listener_factory(
    sink: BreakerTelemetrySink, run_id: str
) -> Callable[[str], BreakerTelemetryListener]:
    """Build a ``BreakerRegistry`` listener factory attaching one listener per service."""

    def _factory(service: str) -> BreakerTelemetryListener:
        return BreakerTelemetryListener(sink, BreakerListenerConfig(run_id=run_id, service=service))

    return _factory
