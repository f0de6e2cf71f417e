"""Latchkey MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from latchkey_mcp.config import ConfigurationError, LatchkeySettings
from latchkey_mcp.orchestration import BrowserOrchestrator
from latchkey_mcp.registry import ProfileRegistry
from latchkey_mcp.remote import BrowserUseClient, RemoteTransportError
from latchkey_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: LatchkeySettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_profiles(args: argparse.Namespace) -> None:
    settings = LatchkeySettings()
    registry = ProfileRegistry(
        settings.registry_path,
        BrowserUseClient.from_settings(settings),
        usage_path=settings.usage_path,
    )
    try:
        records = list(registry.records())
    except (OSError, ValueError) as exc:
        print(f"Registry unreadable: {exc}")
        raise SystemExit(1)

    if args.user:
        records = [record for record in records if record.user_id == args.user]

    payload = [
        {
            "user_id": record.user_id,
            "platform": record.platform,
            "profile_id": record.profile_id,
            "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
        }
        for record in records
    ]
    print(json.dumps(payload, indent=2))


async def _refresh(settings: LatchkeySettings, store: ChromaStore | None) -> list[dict[str, object]]:
    orchestrator = BrowserOrchestrator.from_settings(settings, store=store)
    try:
        refreshed = await orchestrator.refresh_stale_profiles()
    finally:
        await orchestrator.aclose()
    return [item.to_dict() for item in refreshed]


def cmd_refresh(args: argparse.Namespace) -> None:
    settings = LatchkeySettings()
    store: ChromaStore | None
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
    except ChromaUnavailableError:
        store = None

    try:
        refreshed = asyncio.run(_refresh(settings, store))
    except (ConfigurationError, RemoteTransportError) as exc:
        print(f"Refresh failed: {exc}")
        raise SystemExit(1)
    print(json.dumps({"refreshed": refreshed, "count": len(refreshed)}, indent=2))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = LatchkeySettings()
    store = load_store(settings)
    try:
        records = store.list_session_tracking(task_id=args.task_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(
        json.dumps(
            [
                {
                    "session_id": record.session_id,
                    "task_id": record.task_id,
                    "profile_id": record.profile_id,
                    "status": record.status,
                    "recorded_at": record.recorded_at.isoformat(),
                    "metadata": record.metadata,
                }
                for record in records
            ],
            indent=2,
        )
    )


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = LatchkeySettings()
    store = load_store(settings)
    try:
        runs = store.list_task_runs(user_id=args.user)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    status_counts: dict[str, int] = {}
    for run in runs:
        status_counts[run.status] = status_counts.get(run.status, 0) + 1

    payload = {
        "total": len(runs),
        "status_counts": status_counts,
        "runs": [
            {
                "task_id": run.task_id,
                "user_id": run.user_id,
                "platform": run.platform,
                "session_id": run.session_id,
                "status": run.status,
                "recorded_at": run.recorded_at.isoformat(),
            }
            for run in runs
        ],
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Latchkey MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_profiles = sub.add_parser("profiles", help="List profile mappings from the local registry")
    p_profiles.add_argument("--user", help="Only show this user's profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    p_refresh = sub.add_parser("refresh", help="Refresh profiles unused beyond the staleness threshold")
    p_refresh.set_defaults(func=cmd_refresh)

    p_sessions = sub.add_parser("sessions", help="List session tracking records")
    p_sessions.add_argument("--task-id")
    p_sessions.set_defaults(func=cmd_sessions)

    p_tasks = sub.add_parser("tasks", help="List recorded task runs")
    p_tasks.add_argument("--user")
    p_tasks.set_defaults(func=cmd_tasks)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
