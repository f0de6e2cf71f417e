"""Typed views over Browser Use Cloud payloads.

Raw JSON is decoded exactly once here. Everything above the client works with
``RemoteProfile``, ``RemoteSession`` and ``TaskSnapshot`` and never looks at
untyped status strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RemoteProfile(_RemoteModel):
    """A persistent remote browser identity (cookies, local storage)."""

    id: str
    name: str | None = None
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    last_used_at: datetime | None = Field(default=None, alias="lastUsedAt")
    cookie_domains: list[str] = Field(default_factory=list, alias="cookieDomains")

    @field_validator("cookie_domains", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        return [] if value is None else value


class RemoteSession(_RemoteModel):
    """An ephemeral remote browser context bound to a profile."""

    id: str
    status: str | None = None
    live_url: str | None = Field(default=None, alias="liveUrl")
    profile_id: str | None = Field(default=None, alias="profileId")


class TaskStep(_RemoteModel):
    """One append-only progress entry produced by the remote agent."""

    number: int | None = None
    description: str = ""
    url: str | None = None
    screenshot_url: str | None = Field(default=None, alias="screenshotUrl")

    @field_validator("description", mode="before")
    @classmethod
    def _coerce_description(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @classmethod
    def from_payload(cls, payload: Any) -> "TaskStep":
        if isinstance(payload, str):
            return cls(description=payload)
        data = dict(payload or {})
        if not data.get("description"):
            data["description"] = data.get("nextGoal") or data.get("evaluationPreviousGoal") or ""
        return cls.model_validate(data)


@dataclass(frozen=True, slots=True)
class Queued:
    name = "queued"


@dataclass(frozen=True, slots=True)
class Running:
    name = "running"


@dataclass(frozen=True, slots=True)
class Finished:
    output: str | None = None
    name = "finished"


@dataclass(frozen=True, slots=True)
class Failed:
    error: str = "Unknown error"
    name = "failed"


TaskState = Union[Queued, Running, Finished, Failed]

_QUEUED = {"created", "queued", "pending"}
_RUNNING = {"started", "running", "paused"}
_FINISHED = {"finished", "completed", "done"}
_FAILED = {"failed", "error", "stopped"}


def decode_state(payload: dict[str, Any]) -> TaskState:
    """Map a remote task payload onto the task state union."""

    status = str(payload.get("status") or "").strip().lower()
    output = payload.get("output")
    error = payload.get("error")
    if status in _FINISHED:
        if payload.get("isSuccess") is False:
            return Failed(error=str(error or output or "Task reported an unsuccessful finish"))
        return Finished(output=None if output is None else str(output))
    if status in _FAILED:
        return Failed(error=str(error or output or "Unknown error"))
    if status in _QUEUED:
        return Queued()
    # Unrecognised states keep the monitor running.
    return Running()


@dataclass(slots=True)
class TaskHandle:
    task_id: str
    session_id: str | None = None


@dataclass(slots=True)
class TaskSnapshot:
    """Decoded view of a task at one point in time."""

    task_id: str
    state: TaskState
    session_id: str | None = None
    steps: tuple[TaskStep, ...] = ()
    cost: float | None = None
    duration_ms: int | None = None
    screenshots: tuple[str, ...] = field(default_factory=tuple)

    @property
    def status(self) -> str:
        return self.state.name

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.state, (Finished, Failed))

    @property
    def output(self) -> str | None:
        return self.state.output if isinstance(self.state, Finished) else None

    @property
    def error(self) -> str | None:
        return self.state.error if isinstance(self.state, Failed) else None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, task_id: str | None = None) -> "TaskSnapshot":
        raw_steps = payload.get("steps")
        if raw_steps is None and payload.get("step") is not None:
            raw_steps = [payload["step"]]
        steps = tuple(TaskStep.from_payload(item) for item in (raw_steps or []))

        screenshots = [step.screenshot_url for step in steps if step.screenshot_url]
        screenshots.extend(str(url) for url in payload.get("screenshots") or [])

        cost = payload.get("cost")
        duration = payload.get("durationMs")
        return cls(
            task_id=str(payload.get("id") or payload.get("taskId") or task_id or ""),
            state=decode_state(payload),
            session_id=payload.get("sessionId"),
            steps=steps,
            cost=float(cost) if cost is not None else None,
            duration_ms=int(duration) if duration is not None else _duration_from(payload),
            screenshots=tuple(dict.fromkeys(screenshots)),
        )


def _duration_from(payload: dict[str, Any]) -> int | None:
    started = payload.get("startedAt")
    finished = payload.get("finishedAt")
    if not started or not finished:
        return None
    try:
        delta = datetime.fromisoformat(str(finished).replace("Z", "+00:00")) - datetime.fromisoformat(
            str(started).replace("Z", "+00:00")
        )
    except ValueError:
        return None
    return int(delta.total_seconds() * 1000)


__all__ = [
    "Failed",
    "Finished",
    "Queued",
    "RemoteProfile",
    "RemoteSession",
    "Running",
    "TaskHandle",
    "TaskSnapshot",
    "TaskState",
    "TaskStep",
    "decode_state",
]
