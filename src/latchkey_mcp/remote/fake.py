"""In-memory stand-in for :class:`BrowserUseClient` used by tests and dry runs."""

from __future__ import annotations

from datetime import datetime, timezone
from itertools import count
from typing import Any, AsyncIterator, Iterable, Mapping

from .client import BrowserUseClient, RemoteNotFoundError
from .models import RemoteProfile, RemoteSession, TaskHandle, TaskSnapshot


class FakeBrowserUseClient(BrowserUseClient):
    """Test double that simulates Browser Use Cloud responses.

    Task behaviour is scripted: each entry of ``task_scripts`` is the ordered
    list of raw task payloads returned by successive ``get_task`` calls (the
    last one repeats) and by ``stream_task`` for the matching task. ``failures``
    maps a method name to an exception raised on every call to it.
    """

    def __init__(  # type: ignore[override]
        self,
        task_scripts: Iterable[Iterable[Mapping[str, Any]]] | None = None,
        *,
        profiles: Iterable[RemoteProfile] | None = None,
        failures: Mapping[str, BaseException] | None = None,
    ) -> None:
        self._api_key = "fake-key"
        self._base_url = "https://fake.browser-use.invalid/api/v2"
        self._timeout = 1.0
        self._transport = None
        self._http = None
        self._ids = count(1)
        self._scripts: list[list[dict[str, Any]]] = [
            [dict(item) for item in script] for script in (task_scripts or [])
        ]
        self._task_payloads: dict[str, list[dict[str, Any]]] = {}
        self._failures = dict(failures or {})
        self.profiles: dict[str, RemoteProfile] = {profile.id: profile for profile in profiles or []}
        self.sessions: dict[str, RemoteSession] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.submitted: list[tuple[str, dict[str, str]]] = []
        self.stopped: list[str] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        failure = self._failures.get(method)
        if failure is not None:
            raise failure

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def queue_task(self, script: Iterable[Mapping[str, Any]]) -> None:
        self._scripts.append([dict(item) for item in script])

    async def aclose(self) -> None:
        self.calls.append(("aclose", ()))

    async def create_profile(self, name: str | None = None) -> RemoteProfile:
        self._record("create_profile", name)
        now = datetime.now(timezone.utc)
        profile = RemoteProfile(
            id=f"profile-{next(self._ids)}", name=name, created_at=now, updated_at=now
        )
        self.profiles[profile.id] = profile
        return profile

    async def get_profile(self, profile_id: str) -> RemoteProfile:
        self._record("get_profile", profile_id)
        try:
            return self.profiles[profile_id]
        except KeyError as exc:
            raise RemoteNotFoundError(f"Profile {profile_id} not found", status_code=404) from exc

    async def list_profiles(self) -> list[RemoteProfile]:
        self._record("list_profiles")
        return list(self.profiles.values())

    async def delete_profile(self, profile_id: str) -> None:
        self._record("delete_profile", profile_id)
        if self.profiles.pop(profile_id, None) is None:
            raise RemoteNotFoundError(f"Profile {profile_id} not found", status_code=404)

    async def create_session(
        self,
        *,
        profile_id: str | None = None,
        proxy_country_code: str | None = None,
        start_url: str | None = None,
    ) -> RemoteSession:
        self._record("create_session", profile_id)
        session_id = f"session-{next(self._ids)}"
        session = RemoteSession(
            id=session_id,
            status="active",
            live_url=f"https://live.browser-use.invalid/{session_id}",
            profile_id=profile_id,
        )
        self.sessions[session_id] = session
        return session

    async def get_session(self, session_id: str) -> RemoteSession:
        self._record("get_session", session_id)
        try:
            return self.sessions[session_id]
        except KeyError as exc:
            raise RemoteNotFoundError(f"Session {session_id} not found", status_code=404) from exc

    async def list_sessions(self) -> list[RemoteSession]:
        self._record("list_sessions")
        return list(self.sessions.values())

    async def stop_session(self, session_id: str) -> None:
        self._record("stop_session", session_id)
        self.stopped.append(session_id)
        session = self.sessions.get(session_id)
        if session is not None:
            self.sessions[session_id] = session.model_copy(update={"status": "stopped"})

    async def create_task(
        self,
        task: str,
        *,
        profile_id: str | None = None,
        session_id: str | None = None,
        llm: str | None = None,
        max_duration_seconds: int | None = None,
        secrets: Mapping[str, str] | None = None,
    ) -> TaskHandle:
        self._record("create_task", task)
        task_id = f"task-{next(self._ids)}"
        self.tasks[task_id] = {
            "task": task,
            "profile_id": profile_id,
            "session_id": session_id,
            "llm": llm,
            "max_duration_seconds": max_duration_seconds,
            "secrets": dict(secrets or {}),
        }
        script = self._scripts.pop(0) if self._scripts else [{"status": "finished", "output": ""}]
        self._task_payloads[task_id] = script
        return TaskHandle(task_id=task_id, session_id=session_id)

    def _payload(self, task_id: str, entry: Mapping[str, Any]) -> TaskSnapshot:
        payload = {"id": task_id, "sessionId": self.tasks[task_id]["session_id"], **entry}
        return TaskSnapshot.from_payload(payload, task_id=task_id)

    async def get_task(self, task_id: str) -> TaskSnapshot:
        self._record("get_task", task_id)
        script = self._task_payloads.get(task_id)
        if script is None:
            raise RemoteNotFoundError(f"Task {task_id} not found", status_code=404)
        entry = script.pop(0) if len(script) > 1 else script[0]
        return self._payload(task_id, entry)

    async def submit_input(self, task_id: str, parameters: Mapping[str, str]) -> None:
        self._record("submit_input", task_id)
        self.submitted.append((task_id, dict(parameters)))

    async def stream_task(self, task_id: str) -> AsyncIterator[TaskSnapshot]:
        self._record("stream_task", task_id)
        script = self._task_payloads.get(task_id)
        if script is None:
            raise RemoteNotFoundError(f"Task {task_id} not found", status_code=404)
        while len(script) > 1:
            snapshot = self._payload(task_id, script.pop(0))
            yield snapshot
            if snapshot.is_terminal:
                return
        # The last entry stays in place so polling after the stream still sees it.
        if script:
            yield self._payload(task_id, script[0])


__all__ = ["FakeBrowserUseClient"]
