"""Scoped acquisition and release of remote browser sessions."""

from __future__ import annotations

import logging
from types import TracebackType

from ..remote import BrowserUseClient, RemoteSession
from ..storage import ChromaStore

logger = logging.getLogger(__name__)


class SessionGuard:
    """Async context manager that opens (or reuses) a session and stops it on exit.

    Exactly one stop is attempted on every exit path, unless ``keep_alive``
    is set. A failing stop is logged and never replaces the body's result or
    exception.
    """

    def __init__(
        self,
        client: BrowserUseClient,
        *,
        profile_id: str | None = None,
        session_id: str | None = None,
        keep_alive: bool = False,
        store: ChromaStore | None = None,
    ) -> None:
        self._client = client
        self._profile_id = profile_id
        self._requested_session_id = session_id
        self._keep_alive = keep_alive
        self._store = store
        self._session: RemoteSession | None = None
        self.task_id: str | None = None
        self.stop_attempts = 0
        self.stop_error: Exception | None = None

    @property
    def session(self) -> RemoteSession:
        if self._session is None:
            raise RuntimeError("Session guard has not been entered")
        return self._session

    @property
    def reused(self) -> bool:
        return self._requested_session_id is not None

    async def __aenter__(self) -> RemoteSession:
        if self._requested_session_id:
            self._session = await self._client.get_session(self._requested_session_id)
            status = "reused"
        else:
            self._session = await self._client.create_session(profile_id=self._profile_id)
            status = "started"

        logger.info(
            "Browser session ready",
            extra={
                "session_id": self._session.id,
                "profile_id": self._profile_id,
                "reused": self.reused,
            },
        )
        self._track(status)
        return self._session

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if self._session is None:
            return False
        if self._keep_alive:
            logger.debug("Keeping session alive", extra={"session_id": self._session.id})
            self._track("kept_alive")
            return False

        self.stop_attempts += 1
        try:
            await self._client.stop_session(self._session.id)
        except Exception as stop_exc:
            self.stop_error = stop_exc
            logger.warning(
                "Failed to stop browser session",
                extra={"session_id": self._session.id, "error": str(stop_exc)},
            )
            self._track("stop_failed", error=str(stop_exc))
        else:
            self._track("stopped")
        return False

    def _track(self, status: str, **metadata: str) -> None:
        if self._store is None or self._session is None:
            return
        try:
            self._store.record_session_tracking(
                session_id=self._session.id,
                profile_id=self._profile_id,
                task_id=self.task_id,
                status=status,
                metadata=metadata or None,
            )
        except Exception as exc:  # journal is best effort
            logger.debug("Session tracking not recorded", extra={"error": str(exc)})


__all__ = ["SessionGuard"]
