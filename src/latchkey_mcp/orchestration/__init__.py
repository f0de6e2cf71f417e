"""Task orchestration: monitoring, interactive verification, sessions and refresh."""

from .monitor import TaskEvent, TaskMonitor, TaskOutcome
from .orchestrator import (
    BrowserOrchestrator,
    Credentials,
    LoginResult,
    NeedsAuthentication,
    OrchestrationError,
    TaskFailedError,
    TaskResult,
    TaskTimeoutError,
    VerificationUnresolvedError,
)
from .session import SessionGuard
from .sweep import RefreshedProfile, StalenessSweep, is_stale
from .verification import (
    VERIFICATION_KEYWORDS,
    HumanInputCallback,
    VerificationController,
    VerificationRequest,
    VerificationState,
    detect_verification,
)

__all__ = [
    "BrowserOrchestrator",
    "Credentials",
    "HumanInputCallback",
    "LoginResult",
    "NeedsAuthentication",
    "OrchestrationError",
    "RefreshedProfile",
    "SessionGuard",
    "StalenessSweep",
    "TaskEvent",
    "TaskFailedError",
    "TaskMonitor",
    "TaskOutcome",
    "TaskResult",
    "TaskTimeoutError",
    "VERIFICATION_KEYWORDS",
    "VerificationController",
    "VerificationRequest",
    "VerificationState",
    "VerificationUnresolvedError",
    "detect_verification",
    "is_stale",
]
