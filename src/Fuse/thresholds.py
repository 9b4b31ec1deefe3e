# === NAVMAP v1 ===
# {
#   "module": "Fuse.thresholds",
#   "purpose": "Breaker configuration dataclasses and time-of-day threshold resolution",
#   "sections": [
#     {"id": "servicepolicy", "name": "ServicePolicy", "anchor": "class-servicepolicy", "kind": "class"},
#     {"id": "fuseconfig", "name": "FuseConfig", "anchor": "class-fuseconfig", "kind": "class"},
#     {"id": "effectiveconfig", "name": "EffectiveConfig", "anchor": "class-effectiveconfig", "kind": "class"},
#     {"id": "in-peak-window", "name": "in_peak_window", "anchor": "function-in-peak-window", "kind": "function"},
#     {"id": "thresholdresolver", "name": "ThresholdResolver", "anchor": "class-thresholdresolver", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Breaker configuration and adaptive threshold resolution.

Key Classes:
  - ServicePolicy: per-dependency overrides (every field optional)
  - FuseConfig: fully-resolved config loaded at startup (YAML/env/CLI)
  - EffectiveConfig: the values a breaker evaluates against right now
  - ThresholdResolver: merges a service policy over the global defaults and
    picks the peak-hours threshold when the local time falls in the window

Resolution order is fixed: per-service field, else global default. Peak hours
are inclusive at both ends and compared at minute granularity, so with a
9-17 window both 09:00 and 17:00 are peak while 17:01 is not.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional

from Fuse.classifier import DEFAULT_EXCLUDED_STATUSES

__all__ = [
    "ServicePolicy",
    "FuseConfig",
    "EffectiveConfig",
    "ThresholdResolver",
    "in_peak_window",
]


@dataclass(frozen=True)
class ServicePolicy:
    """Overrides for a single dependency; ``None`` falls back to the defaults."""

    threshold: Optional[int] = None
    peak_hours_threshold: Optional[int] = None
    peak_hours_start: Optional[int] = None
    peak_hours_end: Optional[int] = None
    timeout_s: Optional[int] = None
    min_requests: Optional[int] = None


@dataclass(frozen=True)
class FuseConfig:
    """
    Fully-resolved config loaded at startup (from YAML/env/CLI):
    - defaults: applied to unconfigured services
    - services: per-service overrides keyed by normalized service name
    """

    enabled: bool = True
    default_threshold: int = 50
    default_timeout_s: int = 60
    default_min_requests: int = 10
    services: Mapping[str, ServicePolicy] = field(default_factory=dict)
    excluded_statuses: frozenset[int] = DEFAULT_EXCLUDED_STATUSES
    release_delay_s: int = 10  # retry-later hint attached to short-circuit errors
    key_prefix: str = "fuse"
    window_ttl_s: int = 120  # two one-minute windows stay readable
    transition_lock_ttl_s: int = 5
    probe_lock_ttl_s: int = 5


@dataclass(frozen=True)
class EffectiveConfig:
    """Values resolved for one service at one instant."""

    threshold: int
    base_threshold: int
    peak_threshold: Optional[int]
    peak_start_hour: Optional[int]
    peak_end_hour: Optional[int]
    timeout_s: int
    min_requests: int
    is_peak: bool = False


def in_peak_window(moment: datetime, start_hour: int, end_hour: int) -> bool:
    """Return True when ``moment`` falls inside ``[start_hour, end_hour]``.

    A window whose start is after its end wraps past midnight (e.g. 22-6).
    """

    current = moment.hour + moment.minute / 60.0
    if start_hour <= end_hour:
        return start_hour <= current <= end_hour
    return current >= start_hour or current <= end_hour


class ThresholdResolver:
    """Resolve :class:`EffectiveConfig` for a service from a :class:`FuseConfig`."""

    def __init__(self, config: FuseConfig, *, now_wall: Callable[[], float] = time.time) -> None:
        self.config = config
        self._now = now_wall

    def policy_for(self, service: str) -> Optional[ServicePolicy]:
        return self.config.services.get(service)

    def resolve(self, service: str) -> EffectiveConfig:
        cfg = self.config
        policy = self.policy_for(service)
        if policy is None:
            return EffectiveConfig(
                threshold=cfg.default_threshold,
                base_threshold=cfg.default_threshold,
                peak_threshold=None,
                peak_start_hour=None,
                peak_end_hour=None,
                timeout_s=cfg.default_timeout_s,
                min_requests=cfg.default_min_requests,
                is_peak=False,
            )

        base = policy.threshold if policy.threshold is not None else cfg.default_threshold
        is_peak = False
        if policy.peak_hours_start is not None and policy.peak_hours_end is not None:
            moment = datetime.fromtimestamp(self._now())
            is_peak = in_peak_window(moment, policy.peak_hours_start, policy.peak_hours_end)

        threshold = base
        if is_peak and policy.peak_hours_threshold is not None:
            threshold = policy.peak_hours_threshold

        return EffectiveConfig(
            threshold=threshold,
            base_threshold=base,
            peak_threshold=policy.peak_hours_threshold,
            peak_start_hour=policy.peak_hours_start,
            peak_end_hour=policy.peak_hours_end,
            timeout_s=policy.timeout_s if policy.timeout_s is not None else cfg.default_timeout_s,
            min_requests=(
                policy.min_requests if policy.min_requests is not None else cfg.default_min_requests
            ),
            is_peak=is_peak,
        )

    def threshold_for(self, service: str) -> int:
        """Shortcut for ``resolve(service).threshold``."""
        return self.resolve(service).threshold
