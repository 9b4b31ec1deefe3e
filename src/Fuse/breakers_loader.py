# === NAVMAP v1 ===
# {
#   "module": "Fuse.breakers_loader",
#   "purpose": "Load breaker configuration from YAML with env/CLI overlays",
#   "sections": [
#     {"id": "parse-kv-overrides", "name": "_parse_kv_overrides", "anchor": "function-parse-kv-overrides", "kind": "function"},
#     {"id": "merge-policy", "name": "_merge_policy", "anchor": "function-merge-policy", "kind": "function"},
#     {"id": "load-yaml", "name": "_load_yaml", "anchor": "function-load-yaml", "kind": "function"},
#     {"id": "config-from-doc", "name": "_config_from_doc", "anchor": "function-config-from-doc", "kind": "function"},
#     {"id": "apply-env-overlays", "name": "_apply_env_overlays", "anchor": "function-apply-env-overlays", "kind": "function"},
#     {"id": "apply-cli-overrides", "name": "_apply_cli_overrides", "anchor": "function-apply-cli-overrides", "kind": "function"},
#     {"id": "validate", "name": "_validate", "anchor": "function-validate", "kind": "function"},
#     {"id": "load-fuse-config", "name": "load_fuse_config", "anchor": "function-load-fuse-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Breaker config loader: YAML -> FuseConfig with env/CLI overlays.

This module loads breaker configuration from YAML files and applies environment
variable and CLI command-line overlays with proper precedence handling.

Usage:
    import os
    from Fuse.breakers_loader import load_fuse_config

    cfg = load_fuse_config(
        yaml_path=os.getenv("FUSE_CONFIG_YAML"),
        env=os.environ,
        cli_service_overrides=[
            # --service stripe=threshold:40,peak_threshold:60,peak_start:9,peak_end:17
            "stripe=threshold:40,peak_threshold:60,peak_start:9,peak_end:17"
        ],
        cli_defaults_override="threshold:50,timeout:60,min_requests:10",
    )
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from Fuse.breakers import normalize_service_key
from Fuse.errors import ConfigError
from Fuse.thresholds import FuseConfig, ServicePolicy

LOGGER = logging.getLogger(__name__)

# ------------------------------
# Parsing helpers
# ------------------------------

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}

# Accepted spellings → ServicePolicy field
_POLICY_ALIASES = {
    "threshold": "threshold",
    "peak_threshold": "peak_hours_threshold",
    "peak_hours_threshold": "peak_hours_threshold",
    "peak_start": "peak_hours_start",
    "peak_hours_start": "peak_hours_start",
    "peak_end": "peak_hours_end",
    "peak_hours_end": "peak_hours_end",
    "timeout": "timeout_s",
    "timeout_s": "timeout_s",
    "min_requests": "min_requests",
}


def _parse_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    text = str(v).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ConfigError(f"Invalid boolean: {v!r}")


def _parse_int(v: Any, ctx: str = "value") -> int:
    try:
        if isinstance(v, str):
            return int(v.strip().replace("_", ""))
        return int(v)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{ctx}: expected an integer, got {v!r}") from exc


def _maybe_int(v: Any, ctx: str) -> Optional[int]:
    if v is None:
        return None
    return _parse_int(v, ctx)


def _parse_kv_overrides(s: str) -> Dict[str, str]:
    """
    Parse "threshold:40,peak_threshold:60,timeout:30" into a dict of raw strings.
    ``key=value`` pairs are accepted too.
    """
    out: Dict[str, str] = {}
    if not s:
        return out
    for part in s.split(","):
        if not part.strip():
            continue
        if ":" in part:
            k, v = part.split(":", 1)
        elif "=" in part:
            k, v = part.split("=", 1)
        else:
            raise ConfigError(f"Invalid override token (expected key:value): {part!r}")
        out[k.strip().lower()] = v.strip()
    return out


def _merge_policy(base: ServicePolicy, raw: Mapping[str, Any], ctx: str) -> ServicePolicy:
    """Merge service-level overrides (any accepted spelling) into a ServicePolicy."""

    updates: Dict[str, Optional[int]] = {}
    for key, value in raw.items():
        field_name = _POLICY_ALIASES.get(str(key).strip().lower())
        if field_name is None:
            raise ConfigError(f"{ctx}: unknown setting {key!r}")
        updates[field_name] = _maybe_int(value, f"{ctx}.{key}")
    return replace(base, **updates)


def _merge_defaults(cfg: FuseConfig, raw: Mapping[str, Any], ctx: str) -> FuseConfig:
    updates: Dict[str, Any] = {}
    for key, value in raw.items():
        k = str(key).strip().lower()
        if k in {"threshold", "default_threshold"}:
            updates["default_threshold"] = _parse_int(value, f"{ctx}.{key}")
        elif k in {"timeout", "timeout_s", "default_timeout"}:
            updates["default_timeout_s"] = _parse_int(value, f"{ctx}.{key}")
        elif k in {"min_requests", "default_min_requests"}:
            updates["default_min_requests"] = _parse_int(value, f"{ctx}.{key}")
        else:
            raise ConfigError(f"{ctx}: unknown setting {key!r}")
    return replace(cfg, **updates)


def _parse_statuses(s: str) -> frozenset[int]:
    return frozenset(int(x) for x in re.split(r"[,\s]+", s.strip()) if x)


def _apply_classify_override(cur: frozenset[int], s: str) -> frozenset[int]:
    """
    e.g. "excluded=401,403,429"
    """
    if not s:
        return cur
    m = re.search(r"excluded\s*[:=]\s*([0-9,\s]*)", s, re.I)
    if not m:
        raise ConfigError(f"Invalid classify override: {s!r}")
    return _parse_statuses(m.group(1))


def _merge_docs(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge config documents; ``services`` entries merge per service."""

    result: Dict[str, Any] = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            if key == "services":
                services = dict(result[key])
                for name, entry in value.items():
                    if isinstance(entry, Mapping) and isinstance(services.get(name), Mapping):
                        services[name] = {**services[name], **entry}
                    else:
                        services[name] = entry
                result[key] = services
            else:
                result[key] = {**result[key], **value}
            continue
        result[key] = value
    return result


def merge_fuse_docs(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Public helper to merge breaker config documents."""

    return _merge_docs(base, override)


# ------------------------------
# YAML loader & overlays
# ------------------------------


def _load_yaml(path: Optional[str | Path]) -> Dict[str, Any]:
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Breaker YAML not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("Breaker YAML root must be a mapping")
    return data


def _config_from_doc(doc: Mapping[str, Any]) -> FuseConfig:
    cfg = FuseConfig()

    if "enabled" in doc:
        cfg = replace(cfg, enabled=_parse_bool(doc["enabled"]))

    defaults = doc.get("defaults") or {}
    if defaults:
        cfg = _merge_defaults(cfg, defaults, "defaults")

    classify = doc.get("classify") or {}
    if "excluded_statuses" in classify:
        cfg = replace(
            cfg,
            excluded_statuses=frozenset(
                _parse_int(x, "classify.excluded_statuses") for x in classify["excluded_statuses"] or []
            ),
        )

    adv = doc.get("advanced") or {}
    adv_fields = {
        "release_delay": "release_delay_s",
        "release_delay_s": "release_delay_s",
        "window_ttl": "window_ttl_s",
        "window_ttl_s": "window_ttl_s",
        "transition_lock_ttl": "transition_lock_ttl_s",
        "transition_lock_ttl_s": "transition_lock_ttl_s",
        "probe_lock_ttl": "probe_lock_ttl_s",
        "probe_lock_ttl_s": "probe_lock_ttl_s",
    }
    for key, value in adv.items():
        if key == "key_prefix":
            cfg = replace(cfg, key_prefix=str(value))
        elif key in adv_fields:
            cfg = replace(cfg, **{adv_fields[key]: _parse_int(value, f"advanced.{key}")})
        else:
            raise ConfigError(f"advanced: unknown setting {key!r}")

    services: Dict[str, ServicePolicy] = {}
    for name, svals in (doc.get("services") or {}).items():
        key = normalize_service_key(str(name))
        if svals is None:
            svals = {}
        if not isinstance(svals, Mapping):
            raise ConfigError(f"service[{key}]: expected a mapping")
        services[key] = _merge_policy(ServicePolicy(), svals, f"service[{key}]")
    return replace(cfg, services=services)


# ------------------------------
# Env + CLI overlays
# ------------------------------


def _apply_env_overlays(cfg: FuseConfig, env: Mapping[str, str]) -> FuseConfig:
    """
    Supported envs:
      FUSE_ENABLED=true|false
      FUSE_DEFAULT_THRESHOLD=50
      FUSE_DEFAULT_TIMEOUT=60
      FUSE_DEFAULT_MIN_REQUESTS=10
      FUSE_CLASSIFY="excluded=401,403,429"
      FUSE_SERVICE__<NAME>=threshold:40,peak_threshold:60,peak_start:9,peak_end:17,timeout:30,min_requests:5
    """
    new_cfg = cfg

    if (s := env.get("FUSE_ENABLED")) is not None and s != "":
        new_cfg = replace(new_cfg, enabled=_parse_bool(s))

    scalar_envs = {
        "FUSE_DEFAULT_THRESHOLD": "default_threshold",
        "FUSE_DEFAULT_TIMEOUT": "default_timeout_s",
        "FUSE_DEFAULT_MIN_REQUESTS": "default_min_requests",
    }
    for env_key, field_name in scalar_envs.items():
        if s := env.get(env_key):
            new_cfg = replace(new_cfg, **{field_name: _parse_int(s, env_key)})

    if s := env.get("FUSE_CLASSIFY"):
        new_cfg = replace(
            new_cfg, excluded_statuses=_apply_classify_override(new_cfg.excluded_statuses, s)
        )

    prefix = "FUSE_SERVICE__"
    for k, v in env.items():
        if not k.startswith(prefix):
            continue
        name = normalize_service_key(k[len(prefix) :])
        base = new_cfg.services.get(name, ServicePolicy())
        services = dict(new_cfg.services)
        services[name] = _merge_policy(base, _parse_kv_overrides(v), k)
        new_cfg = replace(new_cfg, services=services)

    return new_cfg


def _apply_cli_overrides(
    cfg: FuseConfig,
    *,
    cli_service_overrides: Sequence[str] | None,
    cli_defaults_override: Optional[str],
    cli_classify_override: Optional[str],
    cli_enabled: Optional[bool],
) -> FuseConfig:
    """
    CLI formats:
      --service NAME=threshold:40,peak_threshold:60,peak_start:9,peak_end:17
      --defaults "threshold:50,timeout:60,min_requests:10"
      --classify "excluded=401,403,429"
      --enabled / --disabled
    """
    new_cfg = cfg

    if cli_enabled is not None:
        new_cfg = replace(new_cfg, enabled=cli_enabled)

    if cli_defaults_override:
        new_cfg = _merge_defaults(new_cfg, _parse_kv_overrides(cli_defaults_override), "--defaults")

    if cli_classify_override:
        new_cfg = replace(
            new_cfg,
            excluded_statuses=_apply_classify_override(new_cfg.excluded_statuses, cli_classify_override),
        )

    for item in cli_service_overrides or ():
        if "=" not in item:
            raise ConfigError(f"Invalid --service item (expected NAME=...): {item}")
        raw_name, settings = item.split("=", 1)
        name = normalize_service_key(raw_name)
        base = new_cfg.services.get(name, ServicePolicy())
        services = dict(new_cfg.services)
        services[name] = _merge_policy(base, _parse_kv_overrides(settings), f"--service {name}")
        new_cfg = replace(new_cfg, services=services)

    return new_cfg


# ------------------------------
# Validation
# ------------------------------


def _validate(cfg: FuseConfig) -> None:
    def _chk_threshold(value: Optional[int], ctx: str) -> None:
        if value is not None and not 0 < value <= 100:
            raise ConfigError(f"{ctx}: threshold must be in (0, 100]")

    _chk_threshold(cfg.default_threshold, "defaults")
    if cfg.default_timeout_s <= 0:
        raise ConfigError("defaults: timeout must be >0")
    if cfg.default_min_requests < 1:
        raise ConfigError("defaults: min_requests must be >=1")
    for ctx, value in (
        ("release_delay_s", cfg.release_delay_s),
        ("window_ttl_s", cfg.window_ttl_s),
        ("transition_lock_ttl_s", cfg.transition_lock_ttl_s),
        ("probe_lock_ttl_s", cfg.probe_lock_ttl_s),
    ):
        if value <= 0:
            raise ConfigError(f"advanced: {ctx} must be >0")

    for name, pol in cfg.services.items():
        ctx = f"service[{name}]"
        _chk_threshold(pol.threshold, ctx)
        _chk_threshold(pol.peak_hours_threshold, f"{ctx}.peak_hours_threshold")
        if pol.timeout_s is not None and pol.timeout_s <= 0:
            raise ConfigError(f"{ctx}: timeout must be >0 if set")
        if pol.min_requests is not None and pol.min_requests < 1:
            raise ConfigError(f"{ctx}: min_requests must be >=1 if set")
        if (pol.peak_hours_start is None) != (pol.peak_hours_end is None):
            raise ConfigError(f"{ctx}: peak_hours_start and peak_hours_end must be set together")
        for hour in (pol.peak_hours_start, pol.peak_hours_end):
            if hour is not None and not 0 <= hour <= 23:
                raise ConfigError(f"{ctx}: peak hours must be within 0-23")


# ------------------------------
# Public entrypoint
# ------------------------------


def load_fuse_config(
    yaml_path: Optional[str | Path],
    *,
    env: Mapping[str, str],
    cli_service_overrides: Sequence[str] | None = None,
    cli_defaults_override: Optional[str] = None,
    cli_classify_override: Optional[str] = None,
    cli_enabled: Optional[bool] = None,
    base_doc: Optional[Mapping[str, Any]] = None,
    extra_yaml_paths: Sequence[str | Path] | None = None,
) -> FuseConfig:
    """
    Load breaker configuration with precedence:
      base doc -> YAML (if provided) -> extra YAML -> env overlays -> CLI overlays.

    - Service names are normalized (stripped, lowercased).
    - Validates basic invariants (thresholds in (0, 100], timeout >0,
      min_requests >=1, peak hours paired and within 0-23).
    """
    merged_doc: Dict[str, Any] = {}
    if base_doc:
        merged_doc = merge_fuse_docs(merged_doc, base_doc)

    merged_doc = merge_fuse_docs(merged_doc, _load_yaml(yaml_path))

    for extra in extra_yaml_paths or ():
        merged_doc = merge_fuse_docs(merged_doc, _load_yaml(extra))

    cfg = _config_from_doc(merged_doc)
    cfg = _apply_env_overlays(cfg, env)
    cfg = _apply_cli_overrides(
        cfg,
        cli_service_overrides=cli_service_overrides,
        cli_defaults_override=cli_defaults_override,
        cli_classify_override=cli_classify_override,
        cli_enabled=cli_enabled,
    )

    _validate(cfg)
    LOGGER.debug(
        "loaded breaker config enabled=%s services=%s", cfg.enabled, ",".join(sorted(cfg.services))
    )
    return cfg
