"""JSON-backed registry mapping (user, platform) pairs to remote browser profiles."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from ..remote import BrowserUseClient, RemoteTransportError
from .models import ProfileListing, ProfileRecord, ProfileResolution

logger = logging.getLogger(__name__)

Mapping = dict[str, dict[str, str]]


class ProfileNotFoundError(LookupError):
    """Raised when no profile mapping exists for a (user, platform) pair."""


def profile_name(user_id: str, platform: str) -> str:
    """Deterministic remote profile name for a (user, platform) pair."""

    return f"User_{user_id}_{platform}"


class ProfileRegistry:
    """Persistent store of ``{user_id: {platform: profile_id}}``.

    The JSON document on disk is the single source of truth; every operation
    reloads it, and every mutation rewrites the whole document. Mutations for
    the same (user, platform) pair are serialised with a per-key lock, and no
    await happens between reloading and saving, so writers for different
    pairs cannot lose each other's updates.

    Last-use timestamps live in a sidecar document of the same shape so the
    mapping document keeps its plain ``platform -> profile_id`` layout.
    """

    def __init__(
        self,
        path: Path,
        client: BrowserUseClient,
        *,
        usage_path: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._usage_path = Path(usage_path) if usage_path else self._path.with_name(
            f"{self._path.stem}_usage.json"
        )
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def usage_path(self) -> Path:
        return self._usage_path

    def _lock(self, user_id: str, platform: str) -> asyncio.Lock:
        key = (user_id, platform)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # Document I/O -------------------------------------------------------------

    def load(self) -> Mapping:
        """Load the full mapping document; a missing file is an empty mapping."""

        return _read_document(self._path)

    def save(self, mapping: Mapping) -> None:
        """Persist the full mapping document."""

        _write_document(self._path, mapping)

    def _load_usage(self) -> Mapping:
        return _read_document(self._usage_path)

    def _save_usage(self, usage: Mapping) -> None:
        _write_document(self._usage_path, usage)

    # Operations ---------------------------------------------------------------

    def lookup(self, user_id: str, platform: str) -> str | None:
        return self.load().get(user_id, {}).get(platform)

    async def get_or_create(self, user_id: str, platform: str) -> ProfileResolution:
        """Return the mapped profile, creating a remote one on first use."""

        async with self._lock(user_id, platform):
            existing = self.lookup(user_id, platform)
            if existing:
                return ProfileResolution(profile_id=existing, is_new=False)

            profile = await self._client.create_profile(profile_name(user_id, platform))

            mapping = self.load()
            current = mapping.get(user_id, {}).get(platform)
            if current:
                # Mapped by another process while the remote call was in flight.
                logger.warning(
                    "Profile mapped concurrently; keeping existing id",
                    extra={"user_id": user_id, "platform": platform, "orphaned": profile.id},
                )
                return ProfileResolution(profile_id=current, is_new=False)
            mapping.setdefault(user_id, {})[platform] = profile.id
            self.save(mapping)

        logger.info(
            "Created browser profile",
            extra={"user_id": user_id, "platform": platform, "profile_id": profile.id},
        )
        return ProfileResolution(profile_id=profile.id, is_new=True)

    async def list(self, user_id: str) -> list[ProfileListing]:
        """Resolve every mapped profile for a user; remote failures are per entry."""

        user_profiles = self.load().get(user_id, {})
        usage = self._load_usage().get(user_id, {})
        listings: list[ProfileListing] = []
        for platform, profile_id in user_profiles.items():
            try:
                remote = await self._client.get_profile(profile_id)
            except RemoteTransportError as exc:
                logger.debug(
                    "Profile lookup failed",
                    extra={"user_id": user_id, "platform": platform, "error": str(exc)},
                )
                listings.append(
                    ProfileListing(
                        platform=platform,
                        profile_id=profile_id,
                        error="Profile not found (may have been deleted)"
                        if exc.status_code == 404
                        else f"Profile lookup failed: {exc}",
                    )
                )
                continue
            listings.append(
                ProfileListing(
                    platform=platform,
                    profile_id=profile_id,
                    name=remote.name,
                    created_at=remote.created_at,
                    updated_at=remote.updated_at,
                    last_used_at=_parse_timestamp(usage.get(platform)) or remote.last_used_at,
                    cookie_domains=tuple(remote.cookie_domains),
                )
            )
        return listings

    async def delete(self, user_id: str, platform: str) -> str:
        """Delete the remote profile and its mapping; returns the deleted id."""

        async with self._lock(user_id, platform):
            profile_id = self.lookup(user_id, platform)
            if not profile_id:
                raise ProfileNotFoundError(f"No profile found for {platform}")

            await self._client.delete_profile(profile_id)

            mapping = self.load()
            _drop(mapping, user_id, platform)
            self.save(mapping)

            usage = self._load_usage()
            if _drop(usage, user_id, platform):
                self._save_usage(usage)

        logger.info(
            "Deleted browser profile",
            extra={"user_id": user_id, "platform": platform, "profile_id": profile_id},
        )
        return profile_id

    def touch(self, user_id: str, platform: str, when: datetime | None = None) -> datetime:
        """Record that the pair's profile was used by a task."""

        stamp = when or self._clock()
        usage = self._load_usage()
        usage.setdefault(user_id, {})[platform] = stamp.isoformat()
        self._save_usage(usage)
        return stamp

    def records(self) -> Iterator[ProfileRecord]:
        """Yield every mapping with its last-use timestamp."""

        usage = self._load_usage()
        for user_id, platforms in self.load().items():
            for platform, profile_id in platforms.items():
                yield ProfileRecord(
                    user_id=user_id,
                    platform=platform,
                    profile_id=profile_id,
                    last_used_at=_parse_timestamp(usage.get(user_id, {}).get(platform)),
                )


def _drop(document: Mapping, user_id: str, platform: str) -> bool:
    entries = document.get(user_id)
    if not entries or platform not in entries:
        return False
    del entries[platform]
    if not entries:
        del document[user_id]
    return True


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _read_document(path: Path) -> Mapping:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    if not raw.strip():
        return {}
    document = json.loads(raw)
    if not isinstance(document, dict):
        raise ValueError(f"Registry document at {path} must be a JSON object")
    return {str(user): dict(platforms) for user, platforms in document.items()}


def _write_document(path: Path, document: Mapping) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp_path, path)


__all__ = ["ProfileNotFoundError", "ProfileRegistry", "profile_name"]
