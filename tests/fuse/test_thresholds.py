# === NAVMAP v1 ===
# {
#   "module": "tests.fuse.test_thresholds",
#   "purpose": "Peak-hour threshold resolution and default fallbacks",
#   "sections": [
#     {"id": "testpeakwindow", "name": "TestPeakWindow", "anchor": "class-testpeakwindow", "kind": "class"},
#     {"id": "testresolver", "name": "TestResolver", "anchor": "class-testresolver", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Tests for ThresholdResolver and in_peak_window."""

from __future__ import annotations

from datetime import datetime

import pytest

from Fuse.thresholds import FuseConfig, ServicePolicy, ThresholdResolver, in_peak_window


@pytest.fixture
def peak_config() -> FuseConfig:
    return FuseConfig(
        services={
            "stripe": ServicePolicy(
                threshold=40,
                peak_hours_threshold=60,
                peak_hours_start=9,
                peak_hours_end=17,
                timeout_s=30,
                min_requests=5,
            ),
            "peak-only": ServicePolicy(
                peak_hours_threshold=70, peak_hours_start=9, peak_hours_end=17
            ),
            "night": ServicePolicy(
                threshold=30, peak_hours_threshold=80, peak_hours_start=22, peak_hours_end=6
            ),
        }
    )


def _resolver(config, clock, when):
    clock.set(when)
    return ThresholdResolver(config, now_wall=clock)


# ============================================================================
# in_peak_window
# ============================================================================


class TestPeakWindow:
    @pytest.mark.parametrize(
        "hour,minute,expected",
        [
            (8, 59, False),
            (9, 0, True),
            (12, 30, True),
            (17, 0, True),
            (17, 1, False),
            (0, 0, False),
            (23, 59, False),
        ],
    )
    def test_inclusive_day_window(self, hour, minute, expected):
        assert in_peak_window(datetime(2025, 1, 1, hour, minute), 9, 17) is expected

    @pytest.mark.parametrize(
        "hour,minute,expected",
        [(22, 0, True), (23, 59, True), (0, 0, True), (6, 0, True), (6, 1, False), (12, 0, False)],
    )
    def test_window_wraps_midnight(self, hour, minute, expected):
        assert in_peak_window(datetime(2025, 1, 1, hour, minute), 22, 6) is expected


# ============================================================================
# ThresholdResolver
# ============================================================================


class TestResolver:
    def test_off_peak_uses_base_threshold(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(8))
        cfg = resolver.resolve("stripe")
        assert cfg.threshold == 40
        assert cfg.is_peak is False

    def test_peak_uses_peak_threshold(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(10))
        cfg = resolver.resolve("stripe")
        assert cfg.threshold == 60
        assert cfg.is_peak is True
        assert cfg.base_threshold == 40
        assert cfg.peak_threshold == 60

    @pytest.mark.parametrize(
        "hour,minute,expected",
        [(9, 0, 60), (17, 0, 60), (17, 1, 40), (18, 0, 40), (0, 0, 40), (23, 59, 40)],
    )
    def test_boundaries(self, peak_config, clock, wall_at, hour, minute, expected):
        resolver = _resolver(peak_config, clock, wall_at(hour, minute))
        assert resolver.threshold_for("stripe") == expected

    def test_peak_threshold_without_base_falls_back_to_default(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(10))
        assert resolver.threshold_for("peak-only") == 70

        clock.set(wall_at(20))
        assert resolver.threshold_for("peak-only") == 50

    def test_unconfigured_service_gets_defaults(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(10))
        cfg = resolver.resolve("unknown")
        assert cfg.threshold == 50
        assert cfg.timeout_s == 60
        assert cfg.min_requests == 10
        assert cfg.is_peak is False
        assert cfg.peak_threshold is None

    def test_service_fields_override_defaults(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(8))
        cfg = resolver.resolve("stripe")
        assert cfg.timeout_s == 30
        assert cfg.min_requests == 5

    def test_partial_policy_falls_back_per_field(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(8))
        cfg = resolver.resolve("peak-only")
        assert cfg.timeout_s == 60
        assert cfg.min_requests == 10

    def test_wrapping_window(self, peak_config, clock, wall_at):
        resolver = _resolver(peak_config, clock, wall_at(23))
        assert resolver.threshold_for("night") == 80
        clock.set(wall_at(3))
        assert resolver.threshold_for("night") == 80
        clock.set(wall_at(12))
        assert resolver.threshold_for("night") == 30

    def test_peak_hours_without_peak_threshold(self, clock, wall_at):
        config = FuseConfig(
            services={"svc": ServicePolicy(threshold=35, peak_hours_start=9, peak_hours_end=17)}
        )
        resolver = _resolver(config, clock, wall_at(10))
        cfg = resolver.resolve("svc")
        assert cfg.is_peak is True
        assert cfg.threshold == 35
