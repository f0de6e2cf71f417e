from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from latchkey_mcp.config import ConfigurationError
from latchkey_mcp.remote import (
    BrowserUseClient,
    Failed,
    Finished,
    Queued,
    RemoteNotFoundError,
    RemoteTransportError,
    Running,
    TaskSnapshot,
    decode_state,
)


def _client(handler, api_key: str | None = "test-key") -> BrowserUseClient:
    return BrowserUseClient(
        api_key,
        base_url="https://api.example.test/api/v2",
        transport=httpx.MockTransport(handler),
    )


def test_requests_carry_api_key_header_and_decode_profile() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "id": "prof-1",
                "name": "User_u1_linkedin",
                "createdAt": "2024-05-01T10:00:00+00:00",
                "cookieDomains": [".linkedin.com"],
            },
        )

    async def run() -> None:
        async with _client(handler) as client:
            profile = await client.create_profile("User_u1_linkedin")
            assert profile.id == "prof-1"
            assert profile.cookie_domains == [".linkedin.com"]
            assert profile.created_at is not None

    asyncio.run(run())

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v2/profiles"
    assert request.headers["X-Browser-Use-API-Key"] == "test-key"
    assert json.loads(request.content) == {"name": "User_u1_linkedin"}


def test_missing_api_key_fails_on_first_request_not_construction() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    client = _client(handler, api_key=None)
    assert client.configured is False

    with pytest.raises(ConfigurationError):
        asyncio.run(client.get_profile("prof-1"))
    assert calls == []


def test_not_found_and_server_errors_are_typed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/missing"):
            return httpx.Response(404, json={"detail": "Profile not found"})
        return httpx.Response(503, text="unavailable")

    async def run() -> tuple[BaseException, BaseException]:
        async with _client(handler) as client:
            with pytest.raises(RemoteNotFoundError) as missing:
                await client.get_profile("missing")
            with pytest.raises(RemoteTransportError) as broken:
                await client.list_sessions()
        return missing.value, broken.value

    missing, broken = asyncio.run(run())
    assert missing.status_code == 404
    assert missing.body == {"detail": "Profile not found"}
    assert broken.status_code == 503
    assert not isinstance(broken, RemoteNotFoundError)


def test_network_failures_become_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> None:
        async with _client(handler) as client:
            await client.get_task("task-1")

    with pytest.raises(RemoteTransportError, match="connection refused"):
        asyncio.run(run())


def test_task_lifecycle_calls_use_expected_payloads() -> None:
    seen: list[tuple[str, str, dict | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        seen.append((request.method, request.url.path, body))
        if request.method == "POST" and request.url.path.endswith("/tasks"):
            return httpx.Response(202, json={"id": "task-9", "sessionId": "sess-1"})
        if request.method == "GET":
            return httpx.Response(
                200,
                json={
                    "id": "task-9",
                    "status": "finished",
                    "output": "3 unread messages",
                    "steps": [{"number": 1, "nextGoal": "Open inbox"}],
                    "startedAt": "2024-05-01T10:00:00Z",
                    "finishedAt": "2024-05-01T10:00:02.500Z",
                },
            )
        return httpx.Response(200, json={})

    async def run() -> TaskSnapshot:
        async with _client(handler) as client:
            handle = await client.create_task(
                "Check messages",
                session_id="sess-1",
                llm="gpt-4.1",
                max_duration_seconds=120,
                secrets={"x_password": "hunter2"},
            )
            assert handle.task_id == "task-9"
            assert handle.session_id == "sess-1"
            await client.submit_input("task-9", {"verificationCode": "123456"})
            await client.stop_session("sess-1")
            return await client.get_task("task-9")

    snapshot = asyncio.run(run())

    assert seen[0] == (
        "POST",
        "/api/v2/tasks",
        {
            "task": "Check messages",
            "sessionId": "sess-1",
            "llm": "gpt-4.1",
            "maxDurationSeconds": 120,
            "secrets": {"x_password": "hunter2"},
        },
    )
    assert seen[1] == (
        "PATCH",
        "/api/v2/tasks/task-9",
        {"action": "resume", "parameters": {"verificationCode": "123456"}},
    )
    assert seen[2] == ("PATCH", "/api/v2/sessions/sess-1", {"action": "stop"})

    assert snapshot.state == Finished(output="3 unread messages")
    assert snapshot.steps[0].description == "Open inbox"
    assert snapshot.duration_ms == 2500


def test_stream_yields_one_snapshot_per_message_and_stops_at_terminal() -> None:
    lines = [
        'data: {"status": "running", "step": {"number": 1, "description": "Opened feed"}}',
        "",
        ": keep-alive",
        'data: {"status": "running", "step": {"number": 2, "description": "Scrolled"}}',
        "",
        'data: {"status": "finished", "output": "done"}',
        "",
        'data: {"status": "running", "step": {"number": 3, "description": "ignored"}}',
        "",
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v2/tasks/task-1/stream"
        return httpx.Response(200, content="\n".join(lines).encode("utf-8"))

    async def run() -> list[TaskSnapshot]:
        async with _client(handler) as client:
            return [snapshot async for snapshot in client.stream_task("task-1")]

    snapshots = asyncio.run(run())

    assert [snapshot.status for snapshot in snapshots] == ["running", "running", "finished"]
    assert [step.description for step in snapshots[0].steps] == ["Opened feed"]
    assert [step.description for step in snapshots[1].steps] == ["Scrolled"]
    assert snapshots[2].output == "done"


def test_decode_state_maps_remote_statuses() -> None:
    assert decode_state({"status": "created"}) == Queued()
    assert decode_state({"status": "started"}) == Running()
    assert decode_state({"status": "something-new"}) == Running()
    assert decode_state({"status": "finished", "output": "ok"}) == Finished(output="ok")
    assert decode_state({"status": "stopped"}) == Failed(error="Unknown error")
    assert decode_state({"status": "failed", "error": "Page crashed"}) == Failed(error="Page crashed")
    assert isinstance(
        decode_state({"status": "finished", "isSuccess": False, "output": "Could not log in"}),
        Failed,
    )
