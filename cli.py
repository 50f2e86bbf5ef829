from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="poolsync operator CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=os.getenv("POOLSYNC_API_USER", "admin"))
    p.add_argument("--password", default=os.getenv("POOLSYNC_API_PASSWORD", ""))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show leadership, observed state and retry counters")

    s_ev = sub.add_parser("events", help="Show the event log")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--virtual-server", default=None)

    sub.add_parser("sync", help="Run a full sync now")

    s_inst = sub.add_parser("instance", help="Submit an add/remove instance event")
    s_inst.add_argument("action", choices=["add", "remove"])
    s_inst.add_argument("--group", required=True, help="Auto-scaling group name")
    s_inst.add_argument("--instance", required=True, help="Instance id")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "status":
        r = requests.get(f"{base}/status", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.virtual_server:
            params["virtual_server"] = args.virtual_server
        r = requests.get(f"{base}/events", params=params, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "sync":
        # Longer than the full-sync deadline.
        r = requests.post(f"{base}/sync", auth=auth, timeout=120)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "instance":
        payload = {
            "action": "addInstance" if args.action == "add" else "removeInstance",
            "as_group_name": args.group,
            "instance": args.instance,
        }
        r = requests.post(f"{base}/instance-events", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
