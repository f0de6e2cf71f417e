from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from latchkey_mcp.config import LatchkeySettings
from latchkey_mcp.orchestration import BrowserOrchestrator
from latchkey_mcp.platforms import PlatformCatalog
from latchkey_mcp.registry import ProfileRegistry
from latchkey_mcp.remote import FakeBrowserUseClient
from latchkey_mcp.storage import ChromaStore
from latchkey_mcp.tools import register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _log(self, level: str, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append((level, message, extra or {}))

    def info(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self._log("info", message, extra)

    def warning(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self._log("warning", message, extra)

    def debug(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self._log("debug", message, extra)


class StubContext:
    def __init__(self, *responses: Any) -> None:
        self.logger = StubLogger()
        self.prompts: list[str] = []
        self._responses = list(responses)

    async def elicit(self, message: str, response_type=None):
        self.prompts.append(message)
        return self._responses.pop(0)


class StubCollection:
    def __init__(self) -> None:
        self.rows: list[tuple[str, str, dict[str, Any]]] = []

    def add(self, *, documents, metadatas, ids) -> None:
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.rows.append((record_id, document, dict(metadata)))

    def get(self, *, ids=None, where=None, limit=None):
        clauses = (where or {}).get("$and") or ([where] if where else [])
        rows = [
            row
            for row in self.rows
            if all(row[2].get(key) == value for clause in clauses for key, value in clause.items())
        ]
        return {
            "ids": [row[0] for row in rows],
            "documents": [row[1] for row in rows],
            "metadatas": [row[2] for row in rows],
        }


class StubChromaClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


async def no_sleep(_: float) -> None:
    return None


def _setup(
    tmp_path: Path,
    client: FakeBrowserUseClient,
    *,
    with_store: bool = True,
    max_polls: int = 5,
):
    store = (
        ChromaStore(
            tmp_path / "chroma",
            client_factory=StubChromaClient,
            clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
        )
        if with_store
        else None
    )
    registry = ProfileRegistry(tmp_path / "profiles.json", client, usage_path=tmp_path / "usage.json")
    orchestrator = BrowserOrchestrator(
        client,
        registry,
        PlatformCatalog([]),
        poll_interval=0,
        login_poll_interval=0,
        max_polls=max_polls,
        store=store,
        sleep=no_sleep,
    )
    settings = LatchkeySettings(_env_file=None, data_dir=tmp_path, stale_after_days=7)
    server = StubServer()
    handles = register_tools(server, orchestrator=orchestrator, settings=settings, chroma_store=store)
    return server, handles, orchestrator


def test_register_tools_exposes_orchestration_surface(tmp_path: Path) -> None:
    server, handles, _ = _setup(tmp_path, FakeBrowserUseClient())

    assert set(server._tools) == {
        "get_or_create_profile",
        "execute_task",
        "interactive_login",
        "list_profiles",
        "delete_profile",
        "refresh_stale_profiles",
        "session_history",
    }
    assert handles.execute_task.name == "execute_task"


def test_get_or_create_profile_tool_reports_is_new(tmp_path: Path) -> None:
    _, handles, _ = _setup(tmp_path, FakeBrowserUseClient())
    context = StubContext()

    first = asyncio.run(handles.get_or_create_profile.fn("u1", "linkedin", context=context))
    second = asyncio.run(handles.get_or_create_profile.fn("u1", "linkedin", context=context))

    assert first["is_new"] is True
    assert second == {"profile_id": first["profile_id"], "is_new": False}
    assert context.logger.records[0][1] == "Resolved profile"


def test_execute_task_first_use_asks_for_credentials(tmp_path: Path) -> None:
    _, handles, _ = _setup(tmp_path, FakeBrowserUseClient())

    payload = asyncio.run(handles.execute_task.fn("u1", "linkedin", "Check messages"))

    assert payload["needs_auth"] is True
    assert "Email/Username" in payload["message"]


def test_execute_task_relays_verification_through_elicitation(tmp_path: Path) -> None:
    client = FakeBrowserUseClient(
        [
            [
                {"status": "running", "steps": [{"number": 1, "description": "Enter the security code"}]},
                {"status": "finished", "output": "Message sent"},
            ]
        ]
    )
    _, handles, orchestrator = _setup(tmp_path, client)
    orchestrator.registry.save({"u1": {"linkedin": "profile-l"}})
    context = StubContext(SimpleNamespace(action="accept", data="998877"))

    payload = asyncio.run(
        handles.execute_task.fn("u1", "linkedin", "Send hello to Ada", context=context)
    )

    assert payload["success"] is True
    assert payload["result"] == "Message sent"
    assert client.submitted == [(payload["task_id"], {"verificationCode": "998877"})]
    assert "Enter the security code" in context.prompts[0]
    assert "Live view:" in context.prompts[0]


def test_declined_elicitation_reports_unresolved_verification(tmp_path: Path) -> None:
    client = FakeBrowserUseClient(
        [[{"status": "running", "steps": [{"number": 1, "description": "2FA required"}]}]]
    )
    _, handles, orchestrator = _setup(tmp_path, client)
    orchestrator.registry.save({"u1": {"gmail": "profile-g"}})
    context = StubContext(SimpleNamespace(action="decline", data=None))

    payload = asyncio.run(handles.execute_task.fn("u1", "gmail", "Read mail", context=context))

    assert payload["success"] is False
    assert payload["status"] == "verification_unresolved"
    assert payload["error"] == "verification not provided"
    assert client.submitted == []
    assert len(client.stopped) == 1


def test_execute_task_timeout_is_reported(tmp_path: Path) -> None:
    client = FakeBrowserUseClient([[{"status": "running"}]])
    _, handles, orchestrator = _setup(tmp_path, client, max_polls=2)
    orchestrator.registry.save({"u1": {"github": "profile-gh"}})

    payload = asyncio.run(handles.execute_task.fn("u1", "github", "Star repo", interactive=False))

    assert payload == {
        "success": False,
        "status": "timeout",
        "error": "Task still running after 2 polls",
        "task_id": payload["task_id"],
        "polls": 2,
    }


def test_interactive_login_resolves_profile_from_user_and_platform(tmp_path: Path) -> None:
    client = FakeBrowserUseClient([[{"status": "finished", "output": "Signed in"}]])
    _, handles, orchestrator = _setup(tmp_path, client)

    payload = asyncio.run(
        handles.interactive_login.fn("ada@example.com", "pw", user_id="u1", platform="github")
    )

    assert payload["success"] is True
    assert payload["profile_id"] == orchestrator.registry.lookup("u1", "github")
    record = next(iter(orchestrator.registry.records()))
    assert record.last_used_at is not None

    with pytest.raises(ValueError):
        asyncio.run(handles.interactive_login.fn("ada@example.com", "pw"))


def test_list_and_delete_profile_tools(tmp_path: Path) -> None:
    client = FakeBrowserUseClient()
    _, handles, orchestrator = _setup(tmp_path, client)
    created = asyncio.run(orchestrator.get_or_create_profile("u1", "amazon"))
    orchestrator.registry.save({"u1": {"amazon": created.profile_id, "gmail": "profile-gone"}})

    listing = asyncio.run(handles.list_profiles.fn("u1"))
    by_platform = {row["platform"]: row for row in listing}
    assert by_platform["amazon"]["name"] == "User_u1_amazon"
    assert by_platform["gmail"]["error"] == "Profile not found (may have been deleted)"

    deleted = asyncio.run(handles.delete_profile.fn("u1", "amazon"))
    assert deleted["message"] == "Profile for amazon deleted"

    with pytest.raises(ValueError, match="No profile found for amazon"):
        asyncio.run(handles.delete_profile.fn("u1", "amazon"))


def test_refresh_tool_reports_threshold(tmp_path: Path) -> None:
    _, handles, _ = _setup(tmp_path, FakeBrowserUseClient())

    payload = asyncio.run(handles.refresh_stale_profiles.fn())

    assert payload == {"threshold_days": 7.0, "refreshed": []}


def test_session_history_reads_journal(tmp_path: Path) -> None:
    client = FakeBrowserUseClient([[{"status": "finished", "output": "ok"}]])
    _, handles, orchestrator = _setup(tmp_path, client)
    orchestrator.registry.save({"u1": {"linkedin": "profile-l"}})
    result = asyncio.run(handles.execute_task.fn("u1", "linkedin", "Open feed", interactive=False))

    history = handles.session_history.fn(task_id=result["task_id"])

    assert [run["status"] for run in history["task_runs"]] == ["success"]
    assert [entry["status"] for entry in history["sessions"]] == ["stopped"]
    assert len(handles.session_history.fn()["sessions"]) == 2


def test_session_history_requires_store(tmp_path: Path) -> None:
    _, handles, _ = _setup(tmp_path, FakeBrowserUseClient(), with_store=False)

    with pytest.raises(RuntimeError, match="Chroma store is unavailable"):
        handles.session_history.fn()


def test_session_history_lists_verification_prompts_for_a_task(tmp_path: Path) -> None:
    client = FakeBrowserUseClient(
        [
            [
                {"status": "running", "steps": [{"number": 1, "description": "Enter the security code"}]},
                {"status": "finished", "output": "Message sent"},
            ]
        ]
    )
    _, handles, orchestrator = _setup(tmp_path, client)
    orchestrator.registry.save({"u1": {"linkedin": "profile-l"}})
    context = StubContext(SimpleNamespace(action="accept", data="998877"))
    result = asyncio.run(handles.execute_task.fn("u1", "linkedin", "Send hello", context=context))

    history = handles.session_history.fn(task_id=result["task_id"])

    assert [entry["description"] for entry in history["verification_requests"]] == [
        "Enter the security code"
    ]
    assert history["verification_requests"][0]["task_id"] == result["task_id"]
    assert handles.session_history.fn()["verification_requests"] == []
