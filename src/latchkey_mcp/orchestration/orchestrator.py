"""Public orchestration surface: profiles, guarded task runs and interactive login."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping

from ..config import LatchkeySettings
from ..platforms import Platform, PlatformCatalog, PlatformLoadError
from ..registry import ProfileListing, ProfileRecord, ProfileRegistry, ProfileResolution
from ..remote import BrowserUseClient, RemoteSession, TaskHandle
from ..storage import ChromaStore
from .monitor import MonitorMode, TaskMonitor, TaskOutcome, poll_budget_seconds
from .session import SessionGuard
from .sweep import RefreshedProfile, StalenessSweep
from .verification import (
    VERIFICATION_UNRESOLVED,
    HumanInputCallback,
    VerificationController,
    VerificationRequest,
)

logger = logging.getLogger(__name__)

LOGIN_INSTRUCTION = """Go to {login_url} and log in step by step:

1. Navigate to {login_url}
2. Enter the email or username x_email
3. Click Next if the form asks for it
4. Enter the password x_password
5. Click Next or Sign in

IMPORTANT INSTRUCTIONS:
- If you see a verification code prompt, STOP and describe exactly what you see
- If you see a security check, STOP and describe it
- If you see "Try another way", STOP and describe the options
- If you see "This browser or app may not be secure", STOP and describe it
- After each action, describe what happened."""


class OrchestrationError(RuntimeError):
    """Base class for task-level failures surfaced to callers."""

    def __init__(self, message: str, *, outcome: TaskOutcome | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome


class TaskFailedError(OrchestrationError):
    """The remote task reached the failed state."""


class TaskTimeoutError(OrchestrationError):
    """Monitoring gave up before the task finished; the remote task may still run."""


class VerificationUnresolvedError(TaskFailedError):
    """The human-input channel returned no verification value."""


@dataclass(slots=True)
class Credentials:
    email: str
    password: str

    @classmethod
    def coerce(cls, value: "Credentials | Mapping[str, str]") -> "Credentials":
        if isinstance(value, Credentials):
            return value
        email = value.get("email") or value.get("username")
        password = value.get("password")
        if not email or not password:
            raise ValueError("Credentials require an email (or username) and a password")
        return cls(email=str(email), password=str(password))

    def as_secrets(self) -> dict[str, str]:
        return {"x_email": self.email, "x_password": self.password}


@dataclass(slots=True)
class NeedsAuthentication:
    """Returned instead of running a task when the profile was just created."""

    profile_id: str
    platform: str
    message: str
    needs_auth: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "needs_auth": True,
            "profile_id": self.profile_id,
            "platform": self.platform,
            "message": self.message,
        }


@dataclass(slots=True)
class TaskResult:
    result: str | None
    task_id: str
    session_id: str
    execution_time_ms: int
    screenshots: tuple[str, ...] = ()
    steps: int = 0
    needs_auth: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "result": self.result,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "execution_time_ms": self.execution_time_ms,
            "screenshots": list(self.screenshots),
            "steps": self.steps,
        }


@dataclass(slots=True)
class LoginResult:
    profile_id: str | None
    session_id: str
    task_id: str
    output: str | None
    verification_prompts: int = 0
    message: str = "Login successful! Profile saved."

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "profile_id": self.profile_id,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "output": self.output,
            "verification_prompts": self.verification_prompts,
            "message": self.message,
        }


@dataclass(slots=True)
class _GuardedRun:
    outcome: TaskOutcome
    session: RemoteSession
    handle: TaskHandle
    requests: list[VerificationRequest] = field(default_factory=list)


class BrowserOrchestrator:
    """Mediates between users and the remote automation service.

    Sessions are caller-managed: every run opens (or reuses) a session through
    :class:`SessionGuard` and binds the task to it, so the session is stopped
    on every exit path unless the caller asks to keep it alive.
    """

    def __init__(
        self,
        client: BrowserUseClient,
        registry: ProfileRegistry,
        catalog: PlatformCatalog,
        *,
        poll_interval: float = 5.0,
        login_poll_interval: float = 2.0,
        max_polls: int = 60,
        task_timeout: float | None = None,
        request_timeout: float = 30.0,
        stale_after: timedelta = timedelta(days=7),
        refresh_max_duration: int = 30,
        store: ChromaStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._registry = registry
        self._catalog = catalog
        self._poll_interval = poll_interval
        self._login_poll_interval = login_poll_interval
        self._max_polls = max_polls
        self._task_timeout = task_timeout
        self._request_timeout = request_timeout
        self._stale_after = stale_after
        self._refresh_max_duration = refresh_max_duration
        self._store = store
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: LatchkeySettings,
        *,
        client: BrowserUseClient | None = None,
        store: ChromaStore | None = None,
        catalog: PlatformCatalog | None = None,
    ) -> "BrowserOrchestrator":
        client = client or BrowserUseClient.from_settings(settings)
        registry = ProfileRegistry(settings.registry_path, client, usage_path=settings.usage_path)
        return cls(
            client,
            registry,
            catalog or PlatformCatalog(settings.platform_paths),
            poll_interval=settings.poll_interval,
            login_poll_interval=settings.login_poll_interval,
            max_polls=settings.max_polls,
            task_timeout=settings.task_timeout,
            request_timeout=settings.request_timeout,
            stale_after=timedelta(days=settings.stale_after_days),
            refresh_max_duration=settings.refresh_max_duration,
            store=store,
        )

    @property
    def client(self) -> BrowserUseClient:
        return self._client

    @property
    def registry(self) -> ProfileRegistry:
        return self._registry

    @property
    def catalog(self) -> PlatformCatalog:
        return self._catalog

    async def aclose(self) -> None:
        await self._client.aclose()

    # Profiles -----------------------------------------------------------------

    async def get_or_create_profile(self, user_id: str, platform: str) -> ProfileResolution:
        return await self._registry.get_or_create(user_id, platform)

    async def list_user_profiles(self, user_id: str) -> list[ProfileListing]:
        return await self._registry.list(user_id)

    async def delete_profile(self, user_id: str, platform: str) -> dict[str, Any]:
        profile_id = await self._registry.delete(user_id, platform)
        return {
            "success": True,
            "profile_id": profile_id,
            "message": f"Profile for {platform} deleted",
        }

    async def refresh_stale_profiles(self) -> list[RefreshedProfile]:
        sweep = StalenessSweep(
            self._registry,
            self._client,
            self._catalog,
            self._refresh_profile,
            threshold=self._stale_after,
        )
        return await sweep.run()

    # Tasks --------------------------------------------------------------------

    async def execute_task(
        self,
        user_id: str,
        platform: str,
        instruction: str,
        *,
        model: str | None = None,
        timeout: float | None = None,
        session_id: str | None = None,
        keep_alive: bool = False,
        on_verification: HumanInputCallback | None = None,
        mode: MonitorMode = "poll",
    ) -> NeedsAuthentication | TaskResult:
        """Run ``instruction`` with the user's profile for ``platform``.

        A freshly created profile short-circuits with :class:`NeedsAuthentication`
        and no session or task is created.
        """

        resolution = await self.get_or_create_profile(user_id, platform)
        if resolution.is_new:
            try:
                title = self._catalog.resolve(platform).title
            except PlatformLoadError as exc:
                logger.warning(
                    "Platform catalog unreadable; using fallback title",
                    extra={"platform": platform, "error": str(exc)},
                )
                title = Platform.fallback(platform).title
            return NeedsAuthentication(
                profile_id=resolution.profile_id,
                platform=platform,
                message=(
                    f"First time logging into {title}. Please provide:\n\n"
                    "1. Email/Username\n2. Password\n\n"
                    "(Your credentials are stored in the remote browser profile, not on our servers)"
                ),
            )

        def _mark_used(_handle: TaskHandle) -> None:
            self._registry.touch(user_id, platform)

        run = await self._run_guarded(
            instruction,
            profile_id=resolution.profile_id,
            session_id=session_id,
            keep_alive=keep_alive,
            llm=model,
            timeout=timeout,
            on_verification=on_verification,
            mode=mode,
            poll_interval=self._poll_interval,
            on_started=_mark_used,
        )

        self._journal_run(run, user_id=user_id, platform=platform, profile_id=resolution.profile_id)
        outcome = _raise_for_outcome(run.outcome)
        return TaskResult(
            result=outcome.output,
            task_id=run.handle.task_id,
            session_id=run.session.id,
            execution_time_ms=outcome.duration_ms or 0,
            screenshots=outcome.screenshots,
            steps=len(outcome.steps),
        )

    async def handle_interactive_login(
        self,
        credentials: Credentials | Mapping[str, str],
        *,
        profile_id: str | None = None,
        session_id: str | None = None,
        platform: str | None = None,
        login_url: str | None = None,
        on_verification: HumanInputCallback | None = None,
        keep_alive: bool = False,
        mode: MonitorMode = "poll",
    ) -> LoginResult:
        """Log a profile (or an existing session) into a site, pausing for 2FA prompts."""

        if not profile_id and not session_id:
            raise ValueError("handle_interactive_login requires a profile_id or a session_id")
        if not login_url:
            if not platform:
                raise ValueError("handle_interactive_login requires a login_url or a platform")
            login_url = self._catalog.resolve(platform).login_url

        creds = Credentials.coerce(credentials)
        run = await self._run_guarded(
            LOGIN_INSTRUCTION.format(login_url=login_url),
            profile_id=profile_id,
            session_id=session_id,
            keep_alive=keep_alive,
            secrets=creds.as_secrets(),
            on_verification=on_verification,
            mode=mode,
            poll_interval=self._login_poll_interval,
        )
        self._journal_run(run, platform=platform, profile_id=profile_id, kind="login")
        outcome = _raise_for_outcome(run.outcome, prefix="Login failed")
        return LoginResult(
            profile_id=profile_id,
            session_id=run.session.id,
            task_id=run.handle.task_id,
            output=outcome.output,
            verification_prompts=len(run.requests),
        )

    # Internals ----------------------------------------------------------------

    def _monitor(self, poll_interval: float, timeout: float | None) -> TaskMonitor:
        if timeout is None:
            timeout = self._task_timeout
        if timeout is None:
            # The poll budget has to run out before the wall clock does.
            timeout = poll_budget_seconds(poll_interval, self._max_polls, self._request_timeout)
        return TaskMonitor(
            self._client,
            poll_interval=poll_interval,
            max_polls=self._max_polls,
            timeout=timeout,
            sleep=self._sleep,
        )

    async def _run_guarded(
        self,
        instruction: str,
        *,
        profile_id: str | None,
        session_id: str | None = None,
        keep_alive: bool = False,
        llm: str | None = None,
        timeout: float | None = None,
        max_duration_seconds: int | None = None,
        secrets: Mapping[str, str] | None = None,
        on_verification: HumanInputCallback | None = None,
        mode: MonitorMode = "poll",
        poll_interval: float,
        on_started: Callable[[TaskHandle], None] | None = None,
    ) -> _GuardedRun:
        guard = SessionGuard(
            self._client,
            profile_id=profile_id,
            session_id=session_id,
            keep_alive=keep_alive,
            store=self._store,
        )
        if max_duration_seconds is None and timeout is not None:
            max_duration_seconds = int(timeout)

        async with guard as session:
            handle = await self._client.create_task(
                instruction,
                session_id=session.id,
                llm=llm,
                max_duration_seconds=max_duration_seconds,
                secrets=secrets,
            )
            guard.task_id = handle.task_id
            logger.info(
                "Started remote task",
                extra={"task_id": handle.task_id, "session_id": session.id, "profile_id": profile_id},
            )
            if on_started is not None:
                on_started(handle)

            monitor = self._monitor(poll_interval, timeout)
            if on_verification is None:
                outcome = await monitor.watch(handle.task_id, mode=mode)
                requests: list[VerificationRequest] = []
            else:
                controller = VerificationController(self._client, monitor, on_verification)
                outcome = await controller.run(
                    handle.task_id,
                    session_id=session.id,
                    live_url=session.live_url,
                    mode=mode,
                )
                requests = controller.requests

        return _GuardedRun(outcome=outcome, session=session, handle=handle, requests=requests)

    async def _refresh_profile(self, record: ProfileRecord, platform: Platform) -> TaskOutcome:
        run = await self._run_guarded(
            platform.refresh_task(),
            profile_id=record.profile_id,
            max_duration_seconds=self._refresh_max_duration,
            poll_interval=self._poll_interval,
        )
        self._journal_run(
            run,
            user_id=record.user_id,
            platform=record.platform,
            profile_id=record.profile_id,
            kind="refresh",
        )
        return run.outcome

    def _journal_run(
        self,
        run: _GuardedRun,
        *,
        user_id: str | None = None,
        platform: str | None = None,
        profile_id: str | None = None,
        kind: str = "task",
    ) -> None:
        if self._store is None:
            return
        outcome = run.outcome
        try:
            self._store.record_task_run(
                task_id=run.handle.task_id,
                status=outcome.status,
                user_id=user_id,
                platform=platform,
                profile_id=profile_id,
                session_id=run.session.id,
                metadata={
                    "kind": kind,
                    "reason": outcome.reason,
                    "error": outcome.error,
                    "polls": outcome.polls,
                    "steps": len(outcome.steps),
                    "duration_ms": outcome.duration_ms,
                },
            )
            for request in run.requests:
                self._store.record_verification_request(
                    request.to_dict(), task_id=run.handle.task_id, session_id=run.session.id
                )
        except Exception as exc:  # journal is best effort
            logger.debug("Task run not recorded", extra={"task_id": run.handle.task_id, "error": str(exc)})


def _raise_for_outcome(outcome: TaskOutcome, *, prefix: str = "Task failed") -> TaskOutcome:
    if outcome.status == "success":
        return outcome
    if outcome.status == "timeout":
        raise TaskTimeoutError(outcome.error or "Timeout", outcome=outcome)
    if outcome.reason == VERIFICATION_UNRESOLVED:
        raise VerificationUnresolvedError(outcome.error or "verification not provided", outcome=outcome)
    raise TaskFailedError(f"{prefix}: {outcome.error or 'Unknown error'}", outcome=outcome)


__all__ = [
    "BrowserOrchestrator",
    "Credentials",
    "LoginResult",
    "NeedsAuthentication",
    "OrchestrationError",
    "TaskFailedError",
    "TaskResult",
    "TaskTimeoutError",
    "VerificationUnresolvedError",
]
