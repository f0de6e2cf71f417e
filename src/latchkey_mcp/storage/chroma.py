"""Chroma-backed journal of task runs, session lifecycle and verification prompts."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from .models import SessionTrackingRecord, TaskRunRecord

TASK_RUN = "task_run"
SESSION_TRACKING = "session_tracking"
VERIFICATION_REQUEST = "verification_request"

_TASK_RUN_FIELDS = ("task_id", "user_id", "platform", "profile_id", "session_id", "status")
_SESSION_FIELDS = ("session_id", "task_id", "profile_id", "status")


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """One journal entry as read back from the collection.

    ``session_id`` is the journal stream the entry belongs to
    (``task::<id>`` or ``session::<id>``), not a remote browser session.
    """

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def body(self) -> dict[str, Any]:
        return json.loads(self.document)


def _where(filters: Mapping[str, Any] | None) -> dict[str, Any] | None:
    clauses = {key: value for key, value in (filters or {}).items() if value is not None}
    if len(clauses) <= 1:
        return clauses or None
    # Chroma expects an explicit $and once more than one field is filtered.
    return {"$and": [{key: value} for key, value in clauses.items()]}


def _scalars(values: Mapping[str, Any]) -> dict[str, Any]:
    # Chroma metadata only holds scalars.
    flat: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        flat[key] = value if isinstance(value, (str, int, float, bool)) else json.dumps(value, default=str)
    return flat


def _extras(doc: Mapping[str, Any], known: Iterable[str]) -> dict[str, Any]:
    skip = set(known) | {"timestamp"}
    return {key: value for key, value in doc.items() if key not in skip}


def _task_run(event: ChromaEvent) -> TaskRunRecord:
    doc = event.body()
    return TaskRunRecord(
        task_id=doc["task_id"],
        user_id=doc.get("user_id"),
        platform=doc.get("platform"),
        profile_id=doc.get("profile_id"),
        session_id=doc.get("session_id"),
        status=doc.get("status", "unknown"),
        recorded_at=event.timestamp,
        metadata=_extras(doc, _TASK_RUN_FIELDS),
    )


def _session_tracking(event: ChromaEvent) -> SessionTrackingRecord:
    doc = event.body()
    return SessionTrackingRecord(
        session_id=doc["session_id"],
        task_id=doc.get("task_id"),
        profile_id=doc.get("profile_id"),
        recorded_at=event.timestamp,
        status=doc.get("status", "unknown"),
        metadata=_extras(doc, _SESSION_FIELDS),
    )


class ChromaStore:
    """Append-only orchestration journal kept in one Chroma collection.

    Entries carry a per-stream sequence number so that entries written within
    the same clock tick still read back in the order they were appended.
    Indexed fields go into Chroma metadata for filtering; the full payload is
    the JSON document.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "latchkey_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._persistent_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: CollectionProtocol | None = None
        self._sequences: dict[str, int] = defaultdict(int)

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _persistent_client(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install latchkey-mcp with its dependencies"
            ) from exc
        return chromadb.PersistentClient(path=str(self._path))

    def _open(self) -> CollectionProtocol:
        if self._collection is None:
            self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Open the collection, raising :class:`ChromaUnavailableError` when Chroma is missing."""

        self._open()
        return True

    # Raw entries --------------------------------------------------------------

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChromaEvent:
        """Append one entry to the ``session_id`` stream."""

        collection = self._open()
        self._sequences[session_id] += 1
        timestamp = self._clock()
        entry_metadata = {
            **_scalars(metadata or {}),
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": self._sequences[session_id],
        }
        event = ChromaEvent(
            id=f"{session_id}:{uuid.uuid4().hex}",
            session_id=session_id,
            event_type=event_type,
            document=body if isinstance(body, str) else json.dumps(body, default=str),
            metadata=entry_metadata,
            timestamp=timestamp,
        )
        collection.add(documents=[event.document], metadatas=[event.metadata], ids=[event.id])
        return event

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        return self._read(where={"session_id": session_id}, limit=limit)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Entries matching ``filters`` whose document or metadata contains ``query``."""

        events = self._read(where=_where(filters))
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    def _read(self, *, where: dict[str, Any] | None, limit: int | None = None) -> list[ChromaEvent]:
        result = self._open().get(where=where, limit=limit)
        events = [
            ChromaEvent(
                id=entry_id,
                session_id=metadata.get("session_id", ""),
                event_type=metadata.get("event_type", ""),
                document=document,
                metadata=metadata,
                timestamp=self._timestamp(metadata.get("timestamp")),
            )
            for entry_id, document, metadata in zip(
                result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
            )
        ]
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def _timestamp(self, raw: Any) -> datetime:
        return datetime.fromisoformat(raw) if isinstance(raw, str) else self._clock()

    # Task runs ----------------------------------------------------------------

    def record_task_run(
        self,
        *,
        task_id: str,
        status: str,
        user_id: str | None = None,
        platform: str | None = None,
        profile_id: str | None = None,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TaskRunRecord:
        fields = {
            "task_id": task_id,
            "user_id": user_id,
            "platform": platform,
            "profile_id": profile_id,
            "session_id": session_id,
            "status": status,
        }
        event = self.record_event(
            session_id=f"task::{task_id}",
            event_type=TASK_RUN,
            body={**(metadata or {}), **fields},
            metadata={key: fields[key] for key in ("task_id", "user_id", "platform", "profile_id", "status")},
        )
        return _task_run(event)

    def list_task_runs(self, user_id: str | None = None) -> list[TaskRunRecord]:
        events = self.search_events(filters={"event_type": TASK_RUN, "user_id": user_id})
        return [_task_run(event) for event in events]

    # Remote sessions ----------------------------------------------------------

    def record_session_tracking(
        self,
        *,
        session_id: str,
        status: str,
        profile_id: str | None = None,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionTrackingRecord:
        fields = {"session_id": session_id, "task_id": task_id, "profile_id": profile_id, "status": status}
        event = self.record_event(
            session_id=f"session::{session_id}",
            event_type=SESSION_TRACKING,
            body={**(metadata or {}), **fields},
            metadata={
                "remote_session_id": session_id,
                "profile_id": profile_id,
                "task_id": task_id,
                "status": status,
            },
        )
        return _session_tracking(event)

    def list_session_tracking(self, task_id: str | None = None) -> list[SessionTrackingRecord]:
        events = self.search_events(filters={"event_type": SESSION_TRACKING, "task_id": task_id})
        return [_session_tracking(event) for event in events]

    # Verification prompts -----------------------------------------------------

    def record_verification_request(
        self,
        request: Mapping[str, Any],
        *,
        task_id: str,
        session_id: str | None = None,
    ) -> ChromaEvent:
        return self.record_event(
            session_id=f"task::{task_id}",
            event_type=VERIFICATION_REQUEST,
            body=dict(request),
            metadata={"task_id": task_id, "remote_session_id": session_id},
        )

    def list_verification_requests(self, task_id: str) -> list[dict[str, Any]]:
        """Verification prompts raised while ``task_id`` ran, oldest first."""

        return [
            event.body()
            for event in self.fetch_session_events(f"task::{task_id}")
            if event.event_type == VERIFICATION_REQUEST
        ]


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
