"""Data models for the user to profile mapping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class ProfileRecord:
    user_id: str
    platform: str
    profile_id: str
    last_used_at: datetime | None = None


@dataclass(slots=True)
class ProfileResolution:
    profile_id: str
    is_new: bool


@dataclass(slots=True)
class ProfileListing:
    """One row of a user's profile listing; ``error`` is set when the remote lookup failed."""

    platform: str
    profile_id: str
    name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_used_at: datetime | None = None
    cookie_domains: tuple[str, ...] = ()
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"platform": self.platform, "profile_id": self.profile_id}
        if self.error is not None:
            payload["error"] = self.error
            return payload
        payload.update(
            {
                "name": self.name,
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "updated_at": self.updated_at.isoformat() if self.updated_at else None,
                "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
                "cookie_domains": list(self.cookie_domains),
            }
        )
        return payload


__all__ = ["ProfileListing", "ProfileRecord", "ProfileResolution"]
