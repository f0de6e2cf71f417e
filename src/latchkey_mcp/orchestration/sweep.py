"""Periodic refresh of profiles that have not been used recently."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from ..platforms import Platform, PlatformCatalog
from ..registry import ProfileRecord, ProfileRegistry
from ..remote import BrowserUseClient
from .monitor import TaskOutcome

logger = logging.getLogger(__name__)

RefreshRunner = Callable[[ProfileRecord, Platform], Awaitable[TaskOutcome]]


@dataclass(slots=True)
class RefreshedProfile:
    user_id: str
    platform: str
    profile_id: str
    age_days: float
    refreshed_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "platform": self.platform,
            "profile_id": self.profile_id,
            "age_days": round(self.age_days, 2),
            "refreshed_at": self.refreshed_at.isoformat(),
        }


def is_stale(last_used_at: datetime, now: datetime, threshold: timedelta) -> bool:
    """A profile is stale once its age strictly exceeds the threshold."""

    return now - last_used_at > threshold


class StalenessSweep:
    """Run a lightweight navigation task for every profile unused beyond ``threshold``."""

    def __init__(
        self,
        registry: ProfileRegistry,
        client: BrowserUseClient,
        catalog: PlatformCatalog,
        runner: RefreshRunner,
        *,
        threshold: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._client = client
        self._catalog = catalog
        self._runner = runner
        self._threshold = threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.failures: list[dict[str, str]] = []

    @property
    def threshold(self) -> timedelta:
        return self._threshold

    async def _last_used(self, record: ProfileRecord) -> datetime | None:
        if record.last_used_at is not None:
            return record.last_used_at
        remote = await self._client.get_profile(record.profile_id)
        stamp = remote.last_used_at or remote.updated_at or remote.created_at
        if stamp is not None and stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return stamp

    async def run(self) -> list[RefreshedProfile]:
        """Refresh stale profiles; one profile failing never stops the rest."""

        refreshed: list[RefreshedProfile] = []
        self.failures = []
        now = self._clock()

        for record in list(self._registry.records()):
            context = {
                "user_id": record.user_id,
                "platform": record.platform,
                "profile_id": record.profile_id,
            }
            try:
                last_used = await self._last_used(record)
                if last_used is None or not is_stale(last_used, now, self._threshold):
                    continue

                age_days = (now - last_used) / timedelta(days=1)
                outcome = await self._runner(record, self._catalog.resolve(record.platform))
                if not outcome.ok:
                    raise RuntimeError(outcome.error or f"refresh task ended with {outcome.status}")

                stamp = self._registry.touch(record.user_id, record.platform, self._clock())
            except Exception as exc:
                logger.error("Failed to refresh profile", extra={**context, "error": str(exc)})
                self.failures.append({**context, "error": str(exc)})
                continue

            logger.info("Refreshed stale profile", extra={**context, "age_days": round(age_days, 2)})
            refreshed.append(
                RefreshedProfile(
                    user_id=record.user_id,
                    platform=record.platform,
                    profile_id=record.profile_id,
                    age_days=age_days,
                    refreshed_at=stamp,
                )
            )

        return refreshed


__all__ = ["RefreshRunner", "RefreshedProfile", "StalenessSweep", "is_stale"]
