"""Error taxonomy for the plan loop.

Every error carries a machine-readable code plus a human-readable message so
the console layer can surface it without knowing the concrete class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

__all__ = [
    "ErrorCode",
    "PlanLoopError",
    "BackendUnavailable",
    "BackendErrorKind",
    "VersionConflict",
    "PlanStoreError",
    "TaskIterationExhausted",
    "InvalidTransition",
    "PlanInvariantError",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Constants for error codes used across the loop."""

    PARSE_FAILURE = "parse_failure"
    VERSION_CONFLICT = "version_conflict"
    TASK_ITERATION_EXHAUSTED = "task_iteration_exhausted"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    BACKEND_TIMEOUT = "backend_timeout"
    INVALID_TRANSITION = "invalid_transition"
    PLAN_INVARIANT = "plan_invariant"
    STORE_FAILURE = "store_failure"
    TOOL_ERROR = "tool_error"
    UNKNOWN_TOOL = "unknown_tool"
    CANCELLED = "cancelled"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass
class PlanLoopError(Exception):
    """Base exception for all plan loop errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for events and logs."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Backend Errors
# -----------------------------------------------------------------------------

BackendErrorKind = Literal["timeout", "unreachable", "http", "unknown"]


class BackendUnavailable(PlanLoopError):
    """Raised when the model or tool backend cannot answer.

    ``kind`` distinguishes timeouts (retried by the loop as a failed attempt)
    from unreachable hosts and HTTP failures (which abort the request).
    """

    def __init__(
        self,
        message: str,
        *,
        kind: BackendErrorKind = "unknown",
        status_code: int | None = None,
    ) -> None:
        self.kind: BackendErrorKind = kind
        self.status_code = status_code
        details: dict[str, Any] = {"kind": kind}
        if status_code is not None:
            details["status_code"] = status_code
        code = ErrorCode.BACKEND_TIMEOUT if kind == "timeout" else ErrorCode.BACKEND_UNAVAILABLE
        suggestion = "Check that the model server is running and reachable."
        super().__init__(
            error_code=code,
            message=message,
            details=details,
            suggestion=suggestion,
        )

    @property
    def is_timeout(self) -> bool:
        return self.kind == "timeout"


# -----------------------------------------------------------------------------
# Plan Persistence Errors
# -----------------------------------------------------------------------------


class VersionConflict(PlanLoopError):
    """Raised when a plan write targets a version that is no longer on disk."""

    def __init__(
        self,
        session_id: str,
        *,
        expected_version: int | None,
        actual_version: int | None,
    ) -> None:
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            error_code=ErrorCode.VERSION_CONFLICT,
            message="plan changed externally, please retry",
            details={
                "session_id": session_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            suggestion="Reload the plan and repeat the request.",
        )


class PlanStoreError(PlanLoopError):
    """Raised when the store cannot write a plan (permissions, full disk).

    The unsaved plan stays in memory so the write can be retried.
    """

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        super().__init__(
            error_code=ErrorCode.STORE_FAILURE,
            message=f"plan could not be saved: {reason}",
            details={"session_id": session_id},
            suggestion="Check that the plan directory is writable, then repeat the request.",
        )


class PlanInvariantError(PlanLoopError):
    """Raised when an update would leave a plan in an invalid state."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(
            error_code=ErrorCode.PLAN_INVARIANT,
            message=message,
            details=dict(details),
        )


# -----------------------------------------------------------------------------
# Orchestration Errors
# -----------------------------------------------------------------------------


class TaskIterationExhausted(PlanLoopError):
    """A single task failed on every attempt up to the iteration cap.

    Recorded in the task outcome and execution log rather than raised.
    """

    severity: ClassVar[str] = "warning"

    def __init__(self, task: str, attempts: int, last_reason: str = "") -> None:
        self.task = task
        self.attempts = attempts
        details: dict[str, Any] = {"task": task, "attempts": attempts}
        if last_reason:
            details["last_reason"] = last_reason
        super().__init__(
            error_code=ErrorCode.TASK_ITERATION_EXHAUSTED,
            message=f"Task gave no final answer after {attempts} attempt(s)",
            details=details,
        )


class InvalidTransition(PlanLoopError):
    """Raised by the state machine for an event the current state cannot accept."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(
            error_code=ErrorCode.INVALID_TRANSITION,
            message=f"Event {event} is not valid in state {state}",
            details={"state": state, "event": event},
        )
