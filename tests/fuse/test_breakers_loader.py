# === NAVMAP v1 ===
# {
#   "module": "tests.fuse.test_breakers_loader",
#   "purpose": "YAML/env/CLI breaker config loading, precedence and validation",
#   "sections": [
#     {"id": "testyaml", "name": "TestYaml", "anchor": "class-testyaml", "kind": "class"},
#     {"id": "testoverlays", "name": "TestOverlays", "anchor": "class-testoverlays", "kind": "class"},
#     {"id": "testvalidation", "name": "TestValidation", "anchor": "class-testvalidation", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Tests for load_fuse_config."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from Fuse.breakers_loader import load_fuse_config, merge_fuse_docs
from Fuse.errors import ConfigError
from Fuse.thresholds import ServicePolicy

EXAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "fuse.yaml"


@pytest.fixture
def yaml_file(tmp_path):
    def _write(text: str) -> Path:
        path = tmp_path / "fuse.yaml"
        path.write_text(dedent(text), encoding="utf-8")
        return path

    return _write


# ============================================================================
# YAML
# ============================================================================


class TestYaml:
    def test_no_sources_gives_defaults(self):
        cfg = load_fuse_config(None, env={})
        assert cfg.enabled is True
        assert cfg.default_threshold == 50
        assert cfg.default_timeout_s == 60
        assert cfg.default_min_requests == 10
        assert cfg.excluded_statuses == frozenset({401, 403, 429})
        assert cfg.services == {}

    def test_example_config_loads(self):
        cfg = load_fuse_config(EXAMPLE_CONFIG, env={})
        assert sorted(cfg.services) == ["api", "mailgun", "stripe"]
        assert cfg.services["stripe"] == ServicePolicy(
            threshold=40,
            peak_hours_threshold=60,
            peak_hours_start=9,
            peak_hours_end=17,
            timeout_s=30,
            min_requests=5,
        )
        assert cfg.services["mailgun"].timeout_s == 120

    def test_full_document(self, yaml_file):
        path = yaml_file(
            """
            enabled: false
            defaults:
              threshold: 30
              timeout: 90
              min_requests: 4
            classify:
              excluded_statuses: [404]
            advanced:
              release_delay: 15
              window_ttl: 180
              key_prefix: cb
            services:
              Stripe:
                threshold: 45
                peak_threshold: 65
                peak_start: 8
                peak_end: 18
            """
        )
        cfg = load_fuse_config(path, env={})
        assert cfg.enabled is False
        assert (cfg.default_threshold, cfg.default_timeout_s, cfg.default_min_requests) == (30, 90, 4)
        assert cfg.excluded_statuses == frozenset({404})
        assert cfg.release_delay_s == 15
        assert cfg.window_ttl_s == 180
        assert cfg.key_prefix == "cb"
        assert cfg.services["stripe"].peak_hours_threshold == 65
        assert cfg.services["stripe"].peak_hours_start == 8

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_fuse_config(tmp_path / "absent.yaml", env={})

    def test_root_must_be_mapping(self, yaml_file):
        with pytest.raises(ConfigError):
            load_fuse_config(yaml_file("- a\n- b\n"), env={})

    def test_extra_yaml_merges_per_service(self, yaml_file, tmp_path):
        base = yaml_file(
            """
            services:
              stripe: {threshold: 40, timeout: 30}
            """
        )
        extra = tmp_path / "override.yaml"
        extra.write_text("services:\n  stripe: {timeout: 45}\n", encoding="utf-8")

        cfg = load_fuse_config(base, env={}, extra_yaml_paths=[extra])

        assert cfg.services["stripe"].threshold == 40
        assert cfg.services["stripe"].timeout_s == 45

    def test_base_doc_is_lowest_precedence(self, yaml_file):
        path = yaml_file("defaults: {threshold: 60}\n")
        cfg = load_fuse_config(
            path, env={}, base_doc={"defaults": {"threshold": 20, "timeout": 15}}
        )
        assert cfg.default_threshold == 60
        assert cfg.default_timeout_s == 15

    def test_merge_docs_helper(self):
        merged = merge_fuse_docs(
            {"services": {"a": {"threshold": 1}}, "enabled": True},
            {"services": {"a": {"timeout": 2}, "b": {}}, "enabled": False},
        )
        assert merged == {
            "services": {"a": {"threshold": 1, "timeout": 2}, "b": {}},
            "enabled": False,
        }


# ============================================================================
# Env + CLI overlays
# ============================================================================


class TestOverlays:
    def test_env_overrides_yaml(self, yaml_file):
        path = yaml_file("defaults: {threshold: 40}\nservices:\n  stripe: {threshold: 40}\n")
        env = {
            "FUSE_ENABLED": "false",
            "FUSE_DEFAULT_THRESHOLD": "55",
            "FUSE_DEFAULT_TIMEOUT": "120",
            "FUSE_DEFAULT_MIN_REQUESTS": "20",
            "FUSE_CLASSIFY": "excluded=429",
            "FUSE_SERVICE__STRIPE": "threshold:35,timeout:15",
        }
        cfg = load_fuse_config(path, env=env)
        assert cfg.enabled is False
        assert cfg.default_threshold == 55
        assert cfg.default_timeout_s == 120
        assert cfg.default_min_requests == 20
        assert cfg.excluded_statuses == frozenset({429})
        assert cfg.services["stripe"].threshold == 35
        assert cfg.services["stripe"].timeout_s == 15

    def test_env_service_added(self):
        cfg = load_fuse_config(
            None, env={"FUSE_SERVICE__MAILGUN": "peak_threshold=70,peak_start=9,peak_end=17"}
        )
        policy = cfg.services["mailgun"]
        assert policy.peak_hours_threshold == 70
        assert (policy.peak_hours_start, policy.peak_hours_end) == (9, 17)
        assert policy.threshold is None

    def test_unrelated_env_ignored(self):
        cfg = load_fuse_config(None, env={"PATH": "/usr/bin", "FUSE_ENABLED": ""})
        assert cfg.enabled is True

    def test_cli_beats_env(self):
        cfg = load_fuse_config(
            None,
            env={"FUSE_SERVICE__STRIPE": "threshold:35", "FUSE_ENABLED": "true"},
            cli_service_overrides=["stripe=threshold:25"],
            cli_defaults_override="threshold:70,min_requests:3",
            cli_classify_override="excluded=401,403",
            cli_enabled=False,
        )
        assert cfg.services["stripe"].threshold == 25
        assert cfg.default_threshold == 70
        assert cfg.default_min_requests == 3
        assert cfg.excluded_statuses == frozenset({401, 403})
        assert cfg.enabled is False

    def test_cli_service_item_requires_name(self):
        with pytest.raises(ConfigError):
            load_fuse_config(None, env={}, cli_service_overrides=["threshold:25"])

    def test_bad_override_token(self):
        with pytest.raises(ConfigError):
            load_fuse_config(None, env={"FUSE_SERVICE__X": "threshold"})

    def test_bad_boolean(self):
        with pytest.raises(ConfigError):
            load_fuse_config(None, env={"FUSE_ENABLED": "maybe"})

    def test_bad_integer(self):
        with pytest.raises(ConfigError):
            load_fuse_config(None, env={"FUSE_DEFAULT_THRESHOLD": "high"})


# ============================================================================
# Validation
# ============================================================================


class TestValidation:
    @pytest.mark.parametrize(
        "override",
        [
            "svc=threshold:0",
            "svc=threshold:101",
            "svc=peak_threshold:150",
            "svc=timeout:0",
            "svc=min_requests:0",
            "svc=peak_start:9",
            "svc=peak_start:9,peak_end:24",
            "svc=bogus:1",
        ],
    )
    def test_invalid_service_settings(self, override):
        with pytest.raises(ConfigError):
            load_fuse_config(None, env={}, cli_service_overrides=[override])

    @pytest.mark.parametrize(
        "defaults",
        ["threshold:0", "timeout:-1", "min_requests:0", "colour:red"],
    )
    def test_invalid_defaults(self, defaults):
        with pytest.raises(ConfigError):
            load_fuse_config(None, env={}, cli_defaults_override=defaults)

    def test_unknown_advanced_setting(self, yaml_file):
        with pytest.raises(ConfigError):
            load_fuse_config(yaml_file("advanced: {turbo: 1}\n"), env={})

    def test_non_positive_advanced_setting(self, yaml_file):
        with pytest.raises(ConfigError):
            load_fuse_config(yaml_file("advanced: {release_delay: 0}\n"), env={})

    def test_scalar_service_entry_rejected(self, yaml_file):
        with pytest.raises(ConfigError, match=r"service\[stripe\]: expected a mapping"):
            load_fuse_config(yaml_file("services:\n  stripe: 40\n"), env={})

    def test_empty_service_entry_uses_defaults(self, yaml_file):
        cfg = load_fuse_config(yaml_file("services:\n  stripe:\n"), env={})
        assert "stripe" in cfg.services

    def test_threshold_of_100_is_allowed(self):
        cfg = load_fuse_config(None, env={}, cli_service_overrides=["svc=threshold:100"])
        assert cfg.services["svc"].threshold == 100

    def test_wrapping_peak_window_allowed(self):
        cfg = load_fuse_config(None, env={}, cli_service_overrides=["svc=peak_start:22,peak_end:6"])
        assert cfg.services["svc"].peak_hours_start == 22
