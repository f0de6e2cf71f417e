"""Async client for the Browser Use Cloud API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Mapping

import httpx

from ..config import ConfigurationError, LatchkeySettings
from .models import RemoteProfile, RemoteSession, TaskHandle, TaskSnapshot

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.browser-use.com/api/v2"
API_KEY_HEADER = "X-Browser-Use-API-Key"


class RemoteTransportError(RuntimeError):
    """Raised when the remote service cannot be reached or rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteNotFoundError(RemoteTransportError):
    """Raised when the remote service answers 404 for a resource."""


class BrowserUseClient:
    """Execute Browser Use Cloud calls asynchronously.

    Construct once at process start and dispose with :meth:`aclose` (or use it
    as an async context manager). The API key is checked on the first request,
    so a client can be built before configuration is complete.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls, settings: LatchkeySettings, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> "BrowserUseClient":
        return cls(
            settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def __aenter__(self) -> "BrowserUseClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _ensure_http(self) -> httpx.AsyncClient:
        if not self._api_key:
            raise ConfigurationError(
                "BROWSER_USE_API_KEY not configured; set it in the environment or .env file"
            )
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                headers={API_KEY_HEADER: self._api_key, "Content-Type": "application/json"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        http = self._ensure_http()
        try:
            response = await http.request(method, path, json=json_body)
        except httpx.HTTPError as exc:
            raise RemoteTransportError(f"{method} {path} failed: {exc}") from exc
        return _decode_response(method, path, response)

    # Profiles -----------------------------------------------------------------

    async def create_profile(self, name: str | None = None) -> RemoteProfile:
        payload = {"name": name} if name else {}
        data = await self._request("POST", "/profiles", json_body=payload)
        return RemoteProfile.model_validate(data)

    async def get_profile(self, profile_id: str) -> RemoteProfile:
        data = await self._request("GET", f"/profiles/{profile_id}")
        return RemoteProfile.model_validate(data)

    async def list_profiles(self) -> list[RemoteProfile]:
        data = await self._request("GET", "/profiles")
        return [RemoteProfile.model_validate(item) for item in _items(data)]

    async def delete_profile(self, profile_id: str) -> None:
        await self._request("DELETE", f"/profiles/{profile_id}")

    # Sessions -----------------------------------------------------------------

    async def create_session(
        self,
        *,
        profile_id: str | None = None,
        proxy_country_code: str | None = None,
        start_url: str | None = None,
    ) -> RemoteSession:
        payload: dict[str, Any] = {}
        if profile_id:
            payload["profileId"] = profile_id
        if proxy_country_code:
            payload["proxyCountryCode"] = proxy_country_code
        if start_url:
            payload["startUrl"] = start_url
        data = await self._request("POST", "/sessions", json_body=payload)
        return RemoteSession.model_validate(data)

    async def get_session(self, session_id: str) -> RemoteSession:
        data = await self._request("GET", f"/sessions/{session_id}")
        return RemoteSession.model_validate(data)

    async def list_sessions(self) -> list[RemoteSession]:
        data = await self._request("GET", "/sessions")
        return [RemoteSession.model_validate(item) for item in _items(data)]

    async def stop_session(self, session_id: str) -> None:
        await self._request("PATCH", f"/sessions/{session_id}", json_body={"action": "stop"})

    # Tasks --------------------------------------------------------------------

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
        payload: dict[str, Any] = {"task": task}
        if profile_id:
            payload["profileId"] = profile_id
        if session_id:
            payload["sessionId"] = session_id
        if llm:
            payload["llm"] = llm
        if max_duration_seconds:
            payload["maxDurationSeconds"] = int(max_duration_seconds)
        if secrets:
            payload["secrets"] = dict(secrets)
        data = await self._request("POST", "/tasks", json_body=payload)
        task_id = data.get("id") if isinstance(data, dict) else None
        if not task_id:
            raise RemoteTransportError("No task id returned", body=data)
        return TaskHandle(task_id=str(task_id), session_id=data.get("sessionId") or session_id)

    async def get_task(self, task_id: str) -> TaskSnapshot:
        data = await self._request("GET", f"/tasks/{task_id}")
        return TaskSnapshot.from_payload(data, task_id=task_id)

    async def submit_input(self, task_id: str, parameters: Mapping[str, str]) -> None:
        await self._request(
            "PATCH",
            f"/tasks/{task_id}",
            json_body={"action": "resume", "parameters": dict(parameters)},
        )

    async def stream_task(self, task_id: str) -> AsyncIterator[TaskSnapshot]:
        """Yield one snapshot per server-sent update until the stream closes.

        Each snapshot carries only the step delivered with that message.
        """

        http = self._ensure_http()
        path = f"/tasks/{task_id}/stream"
        try:
            async with http.stream("GET", path, headers={"Accept": "text/event-stream"}) as response:
                if response.status_code >= 400:
                    await response.aread()
                    _decode_response("GET", path, response)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    body = line[len("data:"):].strip()
                    if not body or body == "[DONE]":
                        continue
                    try:
                        payload = json.loads(body)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream line", extra={"task_id": task_id})
                        continue
                    snapshot = TaskSnapshot.from_payload(payload, task_id=task_id)
                    yield snapshot
                    if snapshot.is_terminal:
                        return
        except httpx.HTTPError as exc:
            raise RemoteTransportError(f"GET {path} failed: {exc}") from exc


def _items(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.get("items") or data.get("data") or [])
    return []


def _decode_response(method: str, path: str, response: httpx.Response) -> Any:
    try:
        body: Any = response.json() if response.content else None
    except ValueError:
        body = response.text
    if response.status_code == 404:
        raise RemoteNotFoundError(
            f"{method} {path} returned 404", status_code=404, body=body
        )
    if response.status_code >= 400:
        raise RemoteTransportError(
            f"{method} {path} returned {response.status_code}",
            status_code=response.status_code,
            body=body,
        )
    return body


__all__ = [
    "API_KEY_HEADER",
    "BrowserUseClient",
    "DEFAULT_BASE_URL",
    "RemoteNotFoundError",
    "RemoteTransportError",
]
