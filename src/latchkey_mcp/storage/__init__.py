"""Storage abstractions for Latchkey MCP."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import SessionTrackingRecord, TaskRunRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "SessionTrackingRecord",
    "TaskRunRecord",
]
