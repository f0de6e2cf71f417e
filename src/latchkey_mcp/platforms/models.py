"""Platform models describing the sites users automate."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class Platform(BaseModel):
    """A target site and the URLs the orchestrator needs for it."""

    id: str = Field(..., description="Stable identifier, e.g. 'linkedin'.")
    title: str = Field(..., description="Display name for the platform.")
    home_url: str = Field(..., description="Landing page used for refresh navigation.")
    login_url: str = Field(..., description="Page where interactive login starts.")
    refresh_instruction: str | None = Field(
        default=None,
        description="Instruction for the lightweight refresh task; defaults to opening home_url.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata surfaced in listings.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Platform id must not be empty")
        return normalized

    @classmethod
    def fallback(cls, platform_id: str) -> "Platform":
        """Build a platform entry for a site missing from the catalog."""

        slug = platform_id.strip().lower()
        return cls(
            id=slug,
            title=slug.capitalize(),
            home_url=f"https://{slug}.com",
            login_url=f"https://{slug}.com/login",
        )

    def refresh_task(self) -> str:
        return self.refresh_instruction or (
            f"Navigate to {self.home_url} to refresh the browser session"
        )


__all__ = ["Platform"]
