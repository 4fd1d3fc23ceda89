from __future__ import annotations

import argparse
import json
import logging
import sys

import requests

from .consul import ConsulClient
from .errors import ConfigError, ConsulError
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _cmd_run(args: argparse.Namespace) -> int:
    from .daemon import Daemon

    _setup_logging()
    Daemon(args.config).run_forever()
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    from .runtime import load_snapshot

    snap = load_snapshot(args.config)
    _print(
        [
            {
                "name": s.name,
                "kind": s.kind,
                "address": s.address,
                "port": s.port,
                "tags": list(s.tags),
                "probe": "%s:%d" % s.probe_target,
            }
            for s in snap.services
        ]
    )
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    from .availability import AvailabilityStore
    from .reconciler import ReconcileEngine
    from .runtime import load_snapshot

    snap = load_snapshot(args.config)
    cfg = snap.config
    client = ConsulClient(cfg.consul_url, datacenter=cfg.datacenter, namespace=cfg.namespace)
    try:
        engine = ReconcileEngine(client, store=AvailabilityStore(client))
        plan, skipped = engine.plan(snap.services)
    except ConsulError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()
    _print(
        {
            "to_register": [s.name for s in plan.to_register],
            "to_deregister": [s.id for s in plan.to_deregister],
            "skipped_unavailable": skipped,
        }
    )
    return 0


def _cmd_events(args: argparse.Namespace) -> int:
    base = args.api.rstrip("/")
    r = requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10)
    _print(r.json())
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="consulsync", description="Keep Consul in sync with declared services")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("run", "Run the daemon"),
        ("check", "Validate the config and print resolved services"),
        ("plan", "Show what a reconcile pass would change"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("--config", default=settings.config_path, help="Config file (TOML or YAML)")

    s_ev = sub.add_parser("events", help="Show events from a running daemon")
    s_ev.add_argument("--api", default=f"http://localhost:{settings.api_port or 8000}", help="Status API base URL")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)
    handlers = {"run": _cmd_run, "check": _cmd_check, "plan": _cmd_plan, "events": _cmd_events}
    try:
        return handlers[args.cmd](args)
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
