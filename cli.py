from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Service Merge Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default="admin", help="API user for mutating calls")
    p.add_argument("--password", default="change-me", help="API password for mutating calls")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("merges", help="List persisted merge states")

    s_show = sub.add_parser("show", help="Show the merge state of one resource")
    s_show.add_argument("namespace")
    s_show.add_argument("name")

    s_rec = sub.add_parser("reconcile", help="Reconcile one resource now")
    s_rec.add_argument("namespace")
    s_rec.add_argument("name")

    sub.add_parser("outcomes", help="Show the last reconcile outcome per resource")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--resource", help="Only events for namespace/name")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "merges":
        _print(requests.get(f"{base}/merges", timeout=10).json())
        return 0

    if args.cmd == "show":
        r = requests.get(f"{base}/merges/{args.namespace}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reconcile":
        # Transitions may wait for pods to restart; allow for the propagation timeout.
        r = requests.post(
            f"{base}/merges/{args.namespace}/{args.name}/reconcile",
            auth=(args.user, args.password),
            timeout=300,
        )
        body = r.json()
        _print(body)
        return 0 if r.ok and body.get("outcome") == "done" else 1

    if args.cmd == "outcomes":
        _print(requests.get(f"{base}/outcomes", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.resource:
            params["resource"] = args.resource
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
