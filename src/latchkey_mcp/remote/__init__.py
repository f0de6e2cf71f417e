"""Browser Use Cloud client utilities."""

from .client import BrowserUseClient, RemoteNotFoundError, RemoteTransportError
from .fake import FakeBrowserUseClient
from .models import (
    Failed,
    Finished,
    Queued,
    RemoteProfile,
    RemoteSession,
    Running,
    TaskHandle,
    TaskSnapshot,
    TaskState,
    TaskStep,
    decode_state,
)

__all__ = [
    "BrowserUseClient",
    "FakeBrowserUseClient",
    "Failed",
    "Finished",
    "Queued",
    "RemoteNotFoundError",
    "RemoteProfile",
    "RemoteSession",
    "RemoteTransportError",
    "Running",
    "TaskHandle",
    "TaskSnapshot",
    "TaskState",
    "TaskStep",
    "decode_state",
]
