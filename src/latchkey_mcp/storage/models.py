"""Data models for the orchestration journal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class TaskRunRecord:
    task_id: str
    user_id: str | None
    platform: str | None
    profile_id: str | None
    session_id: str | None
    status: str
    recorded_at: datetime
    metadata: dict[str, Any]


@dataclass(slots=True)
class SessionTrackingRecord:
    session_id: str
    task_id: str | None
    profile_id: str | None
    recorded_at: datetime
    status: str
    metadata: dict[str, Any]


__all__ = ["SessionTrackingRecord", "TaskRunRecord"]
