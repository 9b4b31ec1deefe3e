# === NAVMAP v1 ===
# {
#   "module": "Fuse.cli_breakers",
#   "purpose": "CLI subcommands for circuit breaker inspection and operational control",
#   "sections": [
#     {"id": "install-breaker-cli", "name": "install_breaker_cli", "anchor": "function-install-breaker-cli", "kind": "function"},
#     {"id": "cmd-show", "name": "_cmd_show", "anchor": "function-cmd-show", "kind": "function"},
#     {"id": "cmd-reset", "name": "_cmd_reset", "anchor": "function-cmd-reset", "kind": "function"},
#     {"id": "cmd-trip", "name": "_cmd_trip", "anchor": "function-cmd-trip", "kind": "function"},
#     {"id": "cmd-kill-switch", "name": "_cmd_kill_switch", "anchor": "function-cmd-kill-switch", "kind": "function"},
#     {"id": "store-from-spec", "name": "store_from_spec", "anchor": "function-store-from-spec", "kind": "function"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""CLI subcommands for circuit breaker inspection and operational control.

This module provides operator-friendly commands to:
- Display current breaker state, window counters, and recovery times
- Force-open a breaker for maintenance windows
- Reset a breaker after maintenance
- Flip the process-wide kill switch

Typical Usage:
    # Install into argparse
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="cmd", required=True)
    install_breaker_cli(subparsers, make_context)

    # Use from CLI
    fuse --store redis://localhost:6379/0 breaker show
    fuse breaker show --service stripe --trailing
    fuse breaker trip stripe
    fuse breaker reset stripe
    fuse breaker kill-switch off
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

from Fuse.breakers import BreakerRegistry, normalize_service_key
from Fuse.breakers_loader import load_fuse_config
from Fuse.errors import FuseError
from Fuse.guard import KillSwitch
from Fuse.state_store import InMemoryStateStore, SharedStateStore

# Type for dependency injection: factory returns (registry, kill_switch)
ContextFactory = Callable[[], Tuple[BreakerRegistry, KillSwitch]]

LOGGER = logging.getLogger(__name__)


def install_breaker_cli(subparsers: argparse._SubParsersAction, make_context: ContextFactory) -> None:
    """Install breaker CLI subcommands into argument parser.

    Adds:
      - breaker show [--service S] [--trailing] [--json]
      - breaker reset <service>
      - breaker trip <service>
      - breaker kill-switch {on,off,clear,status}
    """
    p = subparsers.add_parser("breaker", help="Inspect and operate circuit breakers")
    sp = p.add_subparsers(dest="breaker_cmd", required=True)

    ps = sp.add_parser("show", help="Display breaker state and window counters")
    ps.add_argument("--service", help="Filter to a single service (optional)")
    ps.add_argument(
        "--trailing", action="store_true", help="Sum the current and the previous window"
    )
    ps.add_argument("--json", action="store_true", help="Emit one JSON object per service")
    ps.set_defaults(func=_cmd_show, make_context=make_context)

    pr = sp.add_parser("reset", help="Return a breaker to closed and clear its counters")
    pr.add_argument("service")
    pr.set_defaults(func=_cmd_reset, make_context=make_context)

    pt = sp.add_parser("trip", help="Force a breaker open for maintenance")
    pt.add_argument("service")
    pt.set_defaults(func=_cmd_trip, make_context=make_context)

    pk = sp.add_parser("kill-switch", help="Enable/disable all breakers process-wide")
    pk.add_argument("action", choices=("on", "off", "clear", "status"))
    pk.set_defaults(func=_cmd_kill_switch, make_context=make_context)


def _cmd_show(args: argparse.Namespace) -> int:
    """Show breaker state.

    Output format (text table):
    SERVICE          STATE       ATTEMPTS  FAILURES  RATE%   RECOVERY_AT
    stripe           open               5         5  100.0   1735723860
    """
    reg, _ = args.make_context()

    services = reg.known_services()
    if args.service:
        wanted = normalize_service_key(args.service)
        services = [wanted]

    if not services:
        print("No breakers to show.")
        return 0

    rows = []
    for name in services:
        breaker = reg.get(name)
        stats = breaker.stats()
        record = {"service": name, **stats.as_dict()}
        if args.trailing:
            trailing = breaker.trailing_stats()
            record.update(
                attempts=trailing.attempts,
                failures=trailing.failures,
                failure_rate=trailing.failure_rate,
            )
        rows.append(record)

    if args.json:
        for record in rows:
            print(json.dumps(record, sort_keys=True))
        return 0

    print(f"{'SERVICE':24} {'STATE':10} {'ATTEMPTS':>9} {'FAILURES':>9} {'RATE%':>7} {'RECOVERY_AT':>12}")
    print("-" * 76)
    for r in rows:
        recovery = r["recovery_at"] if r["recovery_at"] is not None else "-"
        print(
            f"{r['service']:24} {r['state']:10} {r['attempts']:>9} {r['failures']:>9} "
            f"{r['failure_rate']:>7} {recovery:>12}"
        )
    return 0


def _cmd_reset(args: argparse.Namespace) -> int:
    reg, _ = args.make_context()
    breaker = reg.get(args.service)
    breaker.reset()
    print(f"Reset {breaker.service}")
    return 0


def _cmd_trip(args: argparse.Namespace) -> int:
    """Force-open a breaker; it recovers through half-open after its timeout."""
    reg, _ = args.make_context()
    breaker = reg.get(args.service)
    breaker.trip()
    stats = breaker.stats()
    print(f"Opened {breaker.service} until {stats.recovery_at} (timeout={stats.timeout}s)")
    return 0


def _cmd_kill_switch(args: argparse.Namespace) -> int:
    _, switch = args.make_context()
    if args.action == "on":
        switch.enable()
    elif args.action == "off":
        switch.disable()
    elif args.action == "clear":
        switch.clear()
    override = switch.override()
    source = "config" if override is None else "override"
    state = "enabled" if switch.is_enabled() else "disabled"
    print(f"Breakers {state} ({source})")
    return 0


def store_from_spec(spec: str) -> SharedStateStore:
    """Build a store from ``memory``, ``sqlite:PATH`` or a ``redis://`` DSN."""

    if spec == "memory":
        return InMemoryStateStore()
    if spec.startswith("sqlite:"):
        from Fuse.sqlite_state_store import SQLiteStateStore

        return SQLiteStateStore(Path(spec[len("sqlite:") :]))
    if spec.startswith(("redis://", "rediss://")):
        from Fuse.redis_state_store import RedisStateStore

        return RedisStateStore(spec)
    raise ValueError(f"Unsupported store spec: {spec!r}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="fuse", description="Circuit breaker operations")
    parser.add_argument(
        "--config", default=os.getenv("FUSE_CONFIG_YAML"), help="Breaker YAML config path"
    )
    parser.add_argument(
        "--store",
        default=os.getenv("FUSE_STORE", "memory"),
        help="State store: memory | sqlite:PATH | redis://HOST:PORT/DB",
    )
    parser.add_argument(
        "--service-override",
        dest="service_overrides",
        action="append",
        default=[],
        metavar="NAME=k:v,...",
        help="Per-service override, e.g. stripe=threshold:40,timeout:30",
    )
    parser.add_argument("--defaults", metavar="k:v,...", help="Default overrides, e.g. threshold:50,timeout:60")
    parser.add_argument("--classify", metavar="excluded=...", help="Excluded statuses, e.g. excluded=401,403,429")
    parser.add_argument("--log-level", default="WARNING")
    subparsers = parser.add_subparsers(dest="cmd", required=True)

    cache: dict = {}

    def make_context() -> Tuple[BreakerRegistry, KillSwitch]:
        if "ctx" not in cache:
            config = load_fuse_config(
                args.config,
                env=os.environ,
                cli_service_overrides=args.service_overrides,
                cli_defaults_override=args.defaults,
                cli_classify_override=args.classify,
            )
            store = store_from_spec(args.store)
            cache["ctx"] = (BreakerRegistry(config, store), KillSwitch(store, config))
        return cache["ctx"]

    install_breaker_cli(subparsers, make_context)
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    try:
        return int(args.func(args))
    except (FuseError, ValueError, FileNotFoundError) as exc:
        LOGGER.debug("breaker command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
