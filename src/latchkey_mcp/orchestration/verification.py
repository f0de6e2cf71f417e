"""Pause a running task for human-supplied verification input and resume it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable

from ..remote import BrowserUseClient
from .monitor import MonitorMode, TaskEvent, TaskMonitor, TaskOutcome

logger = logging.getLogger(__name__)

VERIFICATION_KEYWORDS: tuple[str, ...] = (
    "verification",
    "code",
    "2fa",
    "security",
    "try another way",
    "not secure",
    "blocked",
)

VERIFICATION_NOT_PROVIDED = "verification not provided"
VERIFICATION_UNRESOLVED = "verification_unresolved"


class VerificationState(str, Enum):
    RUNNING = "running"
    AWAITING_VERIFICATION = "awaiting_verification"
    RESUBMITTED = "resubmitted"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class VerificationRequest:
    """What the human-input channel receives when the remote agent is blocked."""

    description: str
    task_id: str
    session_id: str | None = None
    live_url: str | None = None
    screenshot_url: str | None = None
    kind: str = "verification_needed"

    def to_dict(self) -> dict[str, str | None]:
        return {
            "kind": self.kind,
            "description": self.description,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "live_url": self.live_url,
            "screenshot_url": self.screenshot_url,
        }


HumanInputCallback = Callable[[VerificationRequest], Awaitable["str | None"]]


class VerificationUnresolved(RuntimeError):
    """Raised internally when the human-input channel returns nothing usable."""


def detect_verification(
    description: str | None, keywords: Iterable[str] = VERIFICATION_KEYWORDS
) -> str | None:
    """Return the first keyword found in a step description, if any."""

    text = (description or "").lower()
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


@dataclass(slots=True)
class _Transition:
    state: VerificationState
    at: datetime
    detail: str | None = None


class VerificationController:
    """State machine over one task: running, awaiting verification, resubmitted, done.

    The controller consumes the monitor's events. While the callback is
    pending no further events are consumed, but the monitor's wall-clock
    timeout still cancels the wait.
    """

    def __init__(
        self,
        client: BrowserUseClient,
        monitor: TaskMonitor,
        on_verification: HumanInputCallback,
        *,
        parameter_name: str = "verificationCode",
        keywords: Iterable[str] = VERIFICATION_KEYWORDS,
    ) -> None:
        self.client = client
        self.monitor = monitor
        self.on_verification = on_verification
        self.parameter_name = parameter_name
        self.keywords = tuple(keywords)
        self.state = VerificationState.RUNNING
        self.requests: list[VerificationRequest] = []
        self.history: list[_Transition] = []
        self._task_id = ""
        self._session_id: str | None = None
        self._live_url: str | None = None
        self._screenshot_url: str | None = None

    def _transition(self, state: VerificationState, detail: str | None = None) -> None:
        self.state = state
        self.history.append(_Transition(state=state, at=datetime.now(timezone.utc), detail=detail))
        logger.debug(
            "Verification state change",
            extra={"task_id": self._task_id, "state": state.value, "detail": detail},
        )

    async def run(
        self,
        task_id: str,
        *,
        session_id: str | None = None,
        live_url: str | None = None,
        mode: MonitorMode = "poll",
    ) -> TaskOutcome:
        self._task_id = task_id
        self._session_id = session_id
        self._live_url = live_url
        self._transition(VerificationState.RUNNING)

        try:
            outcome = await self.monitor.watch(task_id, self._on_event, mode=mode)
        except VerificationUnresolved as exc:
            logger.warning(
                "Verification not provided; ending task",
                extra={"task_id": task_id, "session_id": session_id},
            )
            return TaskOutcome(
                status="failure",
                task_id=task_id,
                error=str(exc),
                reason=VERIFICATION_UNRESOLVED,
            )

        if self.state is not VerificationState.DONE:
            self._transition(VerificationState.DONE, outcome.status)
        return outcome

    async def _on_event(self, event: TaskEvent) -> None:
        if self.state is VerificationState.RESUBMITTED:
            self._transition(VerificationState.RUNNING)

        for step in event.new_steps:
            if step.screenshot_url:
                self._screenshot_url = step.screenshot_url

        if event.terminal:
            self._transition(VerificationState.DONE, event.status)
            return

        for step in event.new_steps:
            keyword = detect_verification(step.description, self.keywords)
            if keyword is None:
                continue
            await self._request_verification(step.description, keyword)
            # Later steps in this batch predate the resubmission.
            break

    async def _request_verification(self, description: str, keyword: str) -> None:
        self._transition(VerificationState.AWAITING_VERIFICATION, keyword)
        request = VerificationRequest(
            description=description,
            task_id=self._task_id,
            session_id=self._session_id,
            live_url=self._live_url,
            screenshot_url=self._screenshot_url,
        )
        self.requests.append(request)
        logger.info(
            "User help needed",
            extra={"task_id": self._task_id, "keyword": keyword, "description": description},
        )

        value = await self.on_verification(request)
        if value is None or not str(value).strip():
            self._transition(VerificationState.DONE, VERIFICATION_UNRESOLVED)
            raise VerificationUnresolved(VERIFICATION_NOT_PROVIDED)

        await self.client.submit_input(self._task_id, {self.parameter_name: str(value).strip()})
        self._transition(VerificationState.RESUBMITTED)


__all__ = [
    "HumanInputCallback",
    "VERIFICATION_KEYWORDS",
    "VERIFICATION_NOT_PROVIDED",
    "VERIFICATION_UNRESOLVED",
    "VerificationController",
    "VerificationRequest",
    "VerificationState",
    "VerificationUnresolved",
    "detect_verification",
]
