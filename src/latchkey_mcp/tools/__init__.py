"""Tool registration for Latchkey MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import LatchkeySettings
from ..orchestration import (
    BrowserOrchestrator,
    HumanInputCallback,
    OrchestrationError,
    TaskTimeoutError,
    VerificationRequest,
    VerificationUnresolvedError,
)
from ..registry import ProfileNotFoundError
from ..storage import ChromaStore


@dataclass(slots=True)
class ToolHandles:
    get_or_create_profile: Any
    execute_task: Any
    interactive_login: Any
    list_profiles: Any
    delete_profile: Any
    refresh_stale_profiles: Any
    session_history: Any


def _verification_prompt(request: VerificationRequest) -> str:
    lines = [request.description, "", "Please reply with the verification code or answer."]
    if request.live_url:
        lines.append(f"Live view: {request.live_url}")
    if request.screenshot_url:
        lines.append(f"Screenshot: {request.screenshot_url}")
    return "\n".join(lines)


def elicitation_callback(context: Context) -> HumanInputCallback:
    """Ask the MCP client's user for verification input; decline or cancel yields ``None``."""

    async def _ask(request: VerificationRequest) -> str | None:
        _emit_log(
            context,
            "warning",
            "Verification needed",
            extra={"task_id": request.task_id, "description": request.description},
        )
        result = await context.elicit(_verification_prompt(request), response_type=str)
        if getattr(result, "action", None) != "accept":
            return None
        data = getattr(result, "data", None)
        return str(data) if data is not None else None

    return _ask


def _failure_payload(exc: OrchestrationError) -> dict[str, Any]:
    outcome = exc.outcome
    status = "timeout" if isinstance(exc, TaskTimeoutError) else "failed"
    payload: dict[str, Any] = {"success": False, "status": status, "error": str(exc)}
    if isinstance(exc, VerificationUnresolvedError):
        payload["status"] = "verification_unresolved"
    if outcome is not None:
        payload["task_id"] = outcome.task_id
        payload["polls"] = outcome.polls
    return payload


def register_tools(
    server: FastMCP,
    *,
    orchestrator: BrowserOrchestrator,
    settings: LatchkeySettings,
    chroma_store: ChromaStore | None,
) -> ToolHandles:
    """Register Latchkey's MCP tools on the server."""

    async def _get_or_create_profile(
        user_id: str,
        platform: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Resolve (or create) the remote browser profile for a user and platform."""

        resolution = await orchestrator.get_or_create_profile(user_id, platform)
        _emit_log(
            context,
            "info",
            "Resolved profile",
            extra={"user_id": user_id, "platform": platform, "is_new": resolution.is_new},
        )
        return {"profile_id": resolution.profile_id, "is_new": resolution.is_new}

    async def _execute_task(
        user_id: str,
        platform: str,
        instruction: str,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
        session_id: str | None = None,
        keep_alive: bool = False,
        interactive: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run a natural-language browser task with the user's saved profile."""

        callback = elicitation_callback(context) if interactive and context is not None else None
        try:
            result = await orchestrator.execute_task(
                user_id,
                platform,
                instruction,
                model=model or None,
                timeout=timeout_seconds,
                session_id=session_id,
                keep_alive=keep_alive,
                on_verification=callback,
            )
        except OrchestrationError as exc:
            _emit_log(
                context,
                "warning",
                "Task did not complete",
                extra={"user_id": user_id, "platform": platform, "error": str(exc)},
            )
            return _failure_payload(exc)

        _emit_log(
            context,
            "info",
            "Task finished" if not result.needs_auth else "Authentication required",
            extra={"user_id": user_id, "platform": platform},
        )
        return result.to_dict()

    async def _interactive_login(
        email: str,
        password: str,
        *,
        user_id: str | None = None,
        platform: str | None = None,
        profile_id: str | None = None,
        session_id: str | None = None,
        login_url: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Log a browser profile into a site, asking the user for any 2FA code."""

        if profile_id is None and session_id is None:
            if not user_id or not platform:
                raise ValueError("Provide profile_id, session_id, or user_id with platform")
            profile_id = (await orchestrator.get_or_create_profile(user_id, platform)).profile_id

        callback = elicitation_callback(context) if context is not None else None
        try:
            result = await orchestrator.handle_interactive_login(
                {"email": email, "password": password},
                profile_id=profile_id,
                session_id=session_id,
                platform=platform,
                login_url=login_url,
                on_verification=callback,
            )
        except OrchestrationError as exc:
            return _failure_payload(exc)

        if user_id and platform:
            orchestrator.registry.touch(user_id, platform)
        _emit_log(
            context,
            "info",
            "Interactive login finished",
            extra={"profile_id": profile_id, "prompts": result.verification_prompts},
        )
        return result.to_dict()

    async def _list_profiles(user_id: str, context: Context | None = None) -> list[dict[str, Any]]:
        """List a user's browser profiles; unreachable profiles carry an error field."""

        listings = await orchestrator.list_user_profiles(user_id)
        _emit_log(context, "debug", "Listing profiles", extra={"user_id": user_id, "count": len(listings)})
        return [listing.to_dict() for listing in listings]

    async def _delete_profile(
        user_id: str,
        platform: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Delete a user's browser profile for a platform, remotely and locally."""

        try:
            payload = await orchestrator.delete_profile(user_id, platform)
        except ProfileNotFoundError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(context, "info", "Deleted profile", extra={"user_id": user_id, "platform": platform})
        return payload

    async def _refresh_stale_profiles(context: Context | None = None) -> dict[str, Any]:
        """Refresh every profile unused for longer than the staleness threshold."""

        refreshed = await orchestrator.refresh_stale_profiles()
        _emit_log(context, "info", "Refreshed stale profiles", extra={"count": len(refreshed)})
        return {
            "threshold_days": settings.stale_after_days,
            "refreshed": [item.to_dict() for item in refreshed],
        }

    def _session_history(
        task_id: str | None = None,
        user_id: str | None = None,
        limit: int = 20,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Show recorded task runs and session open/stop events, plus a task's verification prompts."""

        if chroma_store is None:
            raise RuntimeError("Chroma store is unavailable; enable persistence before using this tool")

        runs = chroma_store.list_task_runs(user_id=user_id)
        if task_id:
            runs = [run for run in runs if run.task_id == task_id]
        sessions = chroma_store.list_session_tracking(task_id=task_id)
        verifications = chroma_store.list_verification_requests(task_id) if task_id else []
        _emit_log(
            context,
            "debug",
            "Session history",
            extra={"runs": len(runs), "sessions": len(sessions), "verifications": len(verifications)},
        )
        return {
            "task_runs": [
                {
                    "task_id": run.task_id,
                    "user_id": run.user_id,
                    "platform": run.platform,
                    "session_id": run.session_id,
                    "status": run.status,
                    "recorded_at": run.recorded_at.isoformat(),
                    "metadata": run.metadata,
                }
                for run in runs[-limit:]
            ],
            "sessions": [
                {
                    "session_id": record.session_id,
                    "task_id": record.task_id,
                    "profile_id": record.profile_id,
                    "status": record.status,
                    "recorded_at": record.recorded_at.isoformat(),
                }
                for record in sessions[-limit:]
            ],
            "verification_requests": verifications[-limit:],
        }

    tool_get_or_create = server.tool(
        name="get_or_create_profile",
        description="Resolve the persistent browser profile for a user and platform, creating it on first use.",
    )(_get_or_create_profile)

    tool_execute = server.tool(
        name="execute_task",
        description=(
            "Run a browser automation task with the user's saved profile. Returns needs_auth "
            "when the platform has never been logged into. Verification prompts are forwarded "
            "to the user."
        ),
        annotations={"openWorldHint": True, "destructiveHint": True},
    )(_execute_task)

    tool_login = server.tool(
        name="interactive_login",
        description="Log a browser profile into a site with credentials, pausing for 2FA codes.",
    )(_interactive_login)

    tool_list = server.tool(
        name="list_profiles",
        description="List a user's browser profiles with remote metadata.",
        annotations={"readOnlyHint": True},
    )(_list_profiles)

    tool_delete = server.tool(
        name="delete_profile",
        description="Delete a user's browser profile for a platform.",
        annotations={"destructiveHint": True},
    )(_delete_profile)

    tool_refresh = server.tool(
        name="refresh_stale_profiles",
        description="Run a lightweight navigation task for profiles unused beyond the staleness threshold.",
    )(_refresh_stale_profiles)

    tool_history = server.tool(
        name="session_history",
        description="Show recorded task runs and session lifecycle events; given a task_id, also its verification prompts.",
    )(_session_history)

    return ToolHandles(
        get_or_create_profile=tool_get_or_create,
        execute_task=tool_execute,
        interactive_login=tool_login,
        list_profiles=tool_list,
        delete_profile=tool_delete,
        refresh_stale_profiles=tool_refresh,
        session_history=tool_history,
    )


__all__ = ["ToolHandles", "elicitation_callback", "register_tools"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
