import argparse
import json
import sys
import time
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_status(status: dict) -> None:
    if not status:
        print("No status available.")
        return
    progress = status.get("progress") or {}
    current = progress.get("current", 0)
    total = progress.get("total", 0)
    if status.get("running"):
        print(f"Running step {current}/{total}")
    else:
        print("Idle")
    if status.get("next_run"):
        print(f"Next run: {status['next_run']}")
    last = status.get("last_run") or {}
    if last:
        line = f"Last run: {last.get('status')} at {last.get('finished_at') or last.get('started_at')}"
        if last.get("error"):
            line += f" ({last['error']})"
        print(line)


def _poll_status(client: httpx.Client, base: str, automation_id: str, timeout_s: int = 600) -> dict:
    start = time.time()
    url = _join_url(base, f"/api/automations/{automation_id}/status")
    status: dict = {}
    while time.time() - start < timeout_s:
        resp = client.get(url, timeout=10)
        resp.raise_for_status()
        status = resp.json()
        if not status.get("running"):
            return status
        progress = status.get("progress") or {}
        print(f"Running step {progress.get('current', 0)}/{progress.get('total', 0)}")
        time.sleep(2)
    print("Timed out waiting for the automation to finish.")
    return status


def run_automations_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/automations"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list automations: HTTP {resp.status_code}")
            return 1
        automations = resp.json().get("automations") or []
    if not automations:
        print("No automations.")
        return 0
    for item in automations:
        trigger = (item.get("trigger") or {}).get("type", "manual")
        state = "active" if item.get("isActive") else "inactive"
        running = " running" if item.get("running") else ""
        print(f"{item.get('id')}\t{item.get('name')}\t{trigger}\t{state}{running}")
    return 0


def run_automations_run(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/automations/{args.automation_id}/run"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to start automation: HTTP {resp.status_code} {resp.text}")
            return 1
        print(f"Started {args.automation_id}.")
        if not args.wait:
            return 0
        _poll_status(client, args.base_url, args.automation_id, timeout_s=args.timeout)
        resp = client.get(_join_url(args.base_url, f"/api/automations/{args.automation_id}/runs"), params={"limit": 1}, timeout=10)
        resp.raise_for_status()
        runs = resp.json().get("runs") or []
    if not runs:
        print("No run recorded.")
        return 1
    run = runs[0]
    for line in run.get("logs") or []:
        print(line)
    print(f"Run {run.get('run_id')}: {run.get('status')}")
    return 0 if run.get("status") == "success" else 1


def run_automations_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/automations/{args.automation_id}/status"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code}")
            return 1
        _print_status(resp.json())
    return 0


def run_models(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        if args.sync:
            resp = client.post(_join_url(args.base_url, "/api/models/sync"), timeout=30)
            if resp.status_code >= 400:
                print(f"Failed to sync models: HTTP {resp.status_code}")
                return 1
        resp = client.get(_join_url(args.base_url, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list models: HTTP {resp.status_code}")
            return 1
        models = resp.json().get("models") or []
    if args.json:
        print(json.dumps(models, indent=2))
        return 0
    for model in models:
        caps = model.get("capabilities") or {}
        flags = ",".join(name for name in ("tools", "vision") if caps.get(name))
        print(f"{model.get('id')}\t{model.get('provider')}\t{model.get('type')}\t{flags}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Conduit CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    automations = subparsers.add_parser("automations", help="Automation management")
    automations_sub = automations.add_subparsers(dest="automations_cmd")

    automations_sub.add_parser("list", help="List automations")

    run = automations_sub.add_parser("run", help="Run an automation now")
    run.add_argument("automation_id")
    run.add_argument("--wait", action="store_true", help="Wait for the run to finish")
    run.add_argument("--timeout", type=int, default=900, help="Max wait seconds")

    status = automations_sub.add_parser("status", help="Show automation status")
    status.add_argument("automation_id")

    models = subparsers.add_parser("models", help="List registered models")
    models.add_argument("--sync", action="store_true", help="Refresh local models from Ollama first")
    models.add_argument("--json", action="store_true", help="Print raw JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "automations" and args.automations_cmd == "list":
        return run_automations_list(args)
    if args.command == "automations" and args.automations_cmd == "run":
        return run_automations_run(args)
    if args.command == "automations" and args.automations_cmd == "status":
        return run_automations_status(args)
    if args.command == "models":
        return run_models(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
