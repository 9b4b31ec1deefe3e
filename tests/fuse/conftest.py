# === NAVMAP v1 ===
# {
#   "module": "tests.fuse.conftest",
#   "purpose": "Shared fixtures for breaker tests: fake clock, stores, registries",
#   "sections": [
#     {"id": "fakeclock", "name": "FakeClock", "anchor": "class-fakeclock", "kind": "class"},
#     {"id": "wall-at", "name": "wall_at", "anchor": "function-wall-at", "kind": "function"},
#     {"id": "clock", "name": "clock", "anchor": "function-clock", "kind": "function"},
#     {"id": "store", "name": "store", "anchor": "function-store", "kind": "function"},
#     {"id": "fuse-config", "name": "fuse_config", "anchor": "function-fuse-config", "kind": "function"},
#     {"id": "make-registry", "name": "make_registry", "anchor": "function-make-registry", "kind": "function"},
#     {"id": "registry", "name": "registry", "anchor": "function-registry", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Shared fixtures for the Fuse test suite.

Breakers read the wall clock for window keys, ``opened_at`` and peak hours, so
every test drives time through :class:`FakeClock` instead of sleeping. The
clock starts at 10:30 local time on 2025-01-01; peak-hour tests move it
explicitly.
"""

from __future__ import annotations

from datetime import datetime

import pytest

from Fuse.breakers import BreakerRegistry
from Fuse.state_store import InMemoryStateStore
from Fuse.thresholds import FuseConfig, ServicePolicy


def at(hour: int, minute: int = 0, second: int = 0) -> float:
    """Local epoch seconds for 2025-01-01 at the given time."""
    return datetime(2025, 1, 1, hour, minute, second).timestamp()


class FakeClock:
    """Callable wall clock that only moves when told to."""

    def __init__(self, start: float) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, moment: float) -> None:
        self.now = float(moment)


@pytest.fixture
def wall_at():
    return at


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(at(10, 30))


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(now_wall=clock)


@pytest.fixture
def fuse_config() -> FuseConfig:
    """Defaults plus one small-volume service that opens after five failures."""
    return FuseConfig(
        services={
            "stripe": ServicePolicy(threshold=50, timeout_s=60, min_requests=5),
        }
    )


@pytest.fixture
def make_registry(store, clock, fuse_config):
    def _make(config: FuseConfig | None = None, **kwargs) -> BreakerRegistry:
        return BreakerRegistry(
            config or fuse_config, store, now_wall=clock, **kwargs
        )

    return _make


@pytest.fixture
def registry(make_registry) -> BreakerRegistry:
    return make_registry()
