#!/usr/bin/env python3
from __future__ import annotations
"""Operator CLI for the watchdog admin API.

Usage
-----
  export WATCHDOG_URL=https://watchdog.haiphen.io ADMIN_TOKEN=...

  python tools/watchdog_ctl.py status
  python tools/watchdog_ctl.py check
  python tools/watchdog_ctl.py failover haiphen-api
  python tools/watchdog_ctl.py revert                 # everything
  python tools/watchdog_ctl.py revert haiphen-api     # one service
  python tools/watchdog_ctl.py gcp-url haiphen-api haiphen-api-abc123-uc.a.run.app
  python tools/watchdog_ctl.py digest
"""

import argparse
import json
import os
import sys

import httpx


def build_request(args: argparse.Namespace) -> tuple[str, str, dict | None]:
    """Map a parsed command onto (method, path, json body)."""
    if args.command == "status":
        return "GET", "/v1/watchdog/status", None
    if args.command == "check":
        return "POST", "/v1/watchdog/check", None
    if args.command == "failover":
        return "POST", "/v1/watchdog/failover", {"service": args.service}
    if args.command == "revert":
        if args.service:
            return "POST", f"/v1/watchdog/revert/{args.service}", None
        return "POST", "/v1/watchdog/revert", None
    if args.command == "gcp-url":
        return "POST", "/v1/watchdog/gcp-url", {"service": args.service, "url": args.url}
    if args.command == "digest":
        return "POST", "/v1/watchdog/digest", None
    raise ValueError(f"unknown command {args.command!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Talk to the quota watchdog admin API.")
    parser.add_argument("--url", default=os.environ.get("WATCHDOG_URL", "http://localhost:8000"),
                        help="Watchdog base URL (default: $WATCHDOG_URL or localhost:8000).")
    parser.add_argument("--token", default=os.environ.get("ADMIN_TOKEN", ""),
                        help="Admin bearer token (default: $ADMIN_TOKEN).")
    parser.add_argument("--timeout", type=float, default=60.0,
                        help="Request timeout in seconds (default: 60; a check can take a while).")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show the persisted watchdog state.")
    sub.add_parser("check", help="Run one usage check / failover cycle now.")
    p = sub.add_parser("failover", help="Divert one service to the secondary environment.")
    p.add_argument("service")
    p = sub.add_parser("revert", help="Revert one service, or all when none is given.")
    p.add_argument("service", nargs="?")
    p = sub.add_parser("gcp-url", help="Register an explicit secondary target for a service.")
    p.add_argument("service")
    p.add_argument("url")
    sub.add_parser("digest", help="Send the usage digest email now.")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.token:
        parser.error("--token or $ADMIN_TOKEN is required")

    method, path, body = build_request(args)
    try:
        res = httpx.request(
            method,
            args.url.rstrip("/") + path,
            json=body,
            headers={"Authorization": f"Bearer {args.token}"},
            timeout=args.timeout,
        )
    except httpx.HTTPError as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return 2

    try:
        payload = res.json()
    except ValueError:
        payload = {"raw": res.text}
    print(json.dumps(payload, indent=2))
    return 0 if res.status_code < 400 else 1


if __name__ == "__main__":
    sys.exit(main())
