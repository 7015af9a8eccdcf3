"""Typed representation of a plan document.

A plan is the durable memory of one working session. All records are frozen
so a plan can be passed between phases by value; updates produce new plans.
Text fields of criteria, decisions and log entries are collapsed onto one
line; only the goal may span several lines.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

__all__ = [
    "PlanStatus",
    "AcceptanceCriterion",
    "Decision",
    "ExecutionLogEntry",
    "PlanMetadata",
    "Plan",
    "utcnow",
    "clean_line",
]


def utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def clean_line(text: Any) -> str:
    """Collapse whitespace so a value fits on a single markdown line."""

    if not text:
        return ""
    return " ".join(str(text).split())


class PlanStatus(str, Enum):
    """Lifecycle status of a plan."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> "PlanStatus | None":
        """Map loosely formatted status text onto a status, or ``None`` if unknown."""
        if isinstance(value, PlanStatus):
            return value
        if value is None:
            return None
        key = str(value).strip().strip("`*\"'").lower().replace("-", "_").replace(" ", "_")
        for status in cls:
            if status.value == key:
                return status
        return _STATUS_ALIASES.get(key)

    @classmethod
    def coerce(cls, value: Any, default: "PlanStatus | None" = None) -> "PlanStatus":
        """Like :meth:`parse` but falls back to ``default`` (``planning``)."""
        return cls.parse(value) or default or cls.PLANNING


_STATUS_ALIASES: dict[str, PlanStatus] = {
    "inprogress": PlanStatus.IN_PROGRESS,
    "active": PlanStatus.IN_PROGRESS,
    "running": PlanStatus.IN_PROGRESS,
    "executing": PlanStatus.IN_PROGRESS,
    "done": PlanStatus.COMPLETED,
    "complete": PlanStatus.COMPLETED,
    "finished": PlanStatus.COMPLETED,
    "stuck": PlanStatus.BLOCKED,
    "failure": PlanStatus.FAILED,
    "error": PlanStatus.FAILED,
    "draft": PlanStatus.PLANNING,
    "new": PlanStatus.PLANNING,
}


@dataclass(slots=True, frozen=True)
class AcceptanceCriterion:
    """A checkable condition defining "done" for the plan goal."""

    description: str
    completed: bool = False
    notes: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "description", clean_line(self.description))
        object.__setattr__(self, "notes", clean_line(self.notes) or None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "completed": self.completed,
            "notes": self.notes,
        }


@dataclass(slots=True, frozen=True)
class Decision:
    """A design decision, either accepted or rejected."""

    title: str
    rationale: str = ""
    alternatives: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "title", clean_line(self.title))
        object.__setattr__(self, "rationale", clean_line(self.rationale))
        object.__setattr__(self, "alternatives", tuple(filter(None, map(clean_line, self.alternatives))))

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "rationale": self.rationale,
            "alternatives": list(self.alternatives),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ExecutionLogEntry:
    """Immutable record of one completed unit of work."""

    action: str
    result: str = ""
    tools_used: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", clean_line(self.action))
        object.__setattr__(self, "result", clean_line(self.result))
        object.__setattr__(self, "tools_used", tuple(filter(None, map(clean_line, self.tools_used))))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "result": self.result,
            "tools_used": list(self.tools_used),
        }


@dataclass(slots=True, frozen=True)
class PlanMetadata:
    """Timestamps and the optimistic-concurrency version of a plan."""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    version: int = 1

    def __post_init__(self) -> None:
        if self.updated_at is None or self.updated_at < self.created_at:
            object.__setattr__(self, "updated_at", self.created_at)
        if self.version < 1:
            object.__setattr__(self, "version", 1)

    def touched(self, *, now: datetime | None = None, version: int | None = None) -> "PlanMetadata":
        """Return metadata with a refreshed ``updated_at`` and optional new version."""
        moment = now or utcnow()
        updated = moment if moment >= self.created_at else self.created_at
        return PlanMetadata(
            created_at=self.created_at,
            updated_at=updated,
            version=self.version if version is None else version,
        )


@dataclass(slots=True, frozen=True)
class Plan:
    """The structured memory document for one session."""

    status: PlanStatus = PlanStatus.PLANNING
    goal: str = ""
    acceptance_criteria: tuple[AcceptanceCriterion, ...] = ()
    decisions_made: tuple[Decision, ...] = ()
    decisions_rejected: tuple[Decision, ...] = ()
    execution_log: tuple[ExecutionLogEntry, ...] = ()
    metadata: PlanMetadata = field(default_factory=PlanMetadata)

    def __post_init__(self) -> None:
        for name in ("acceptance_criteria", "decisions_made", "decisions_rejected", "execution_log"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    @classmethod
    def empty(cls, *, now: datetime | None = None) -> "Plan":
        """Create the blank plan used at session start and as recovery fallback."""
        moment = now or utcnow()
        return cls(metadata=PlanMetadata(created_at=moment, updated_at=moment, version=1))

    @property
    def version(self) -> int:
        return self.metadata.version

    @property
    def is_empty(self) -> bool:
        return not (
            self.goal
            or self.acceptance_criteria
            or self.decisions_made
            or self.decisions_rejected
            or self.execution_log
        )

    def problems(self) -> list[str]:
        """Return invariant violations; an empty list means the plan is valid."""
        issues: list[str] = []
        if self.status is not PlanStatus.PLANNING and not self.goal.strip():
            issues.append(f"status '{self.status.value}' requires a non-empty goal")
        updated = self.metadata.updated_at
        if updated is not None and updated < self.metadata.created_at:
            issues.append("updated_at precedes created_at")
        if self.metadata.version < 1:
            issues.append("version must be at least 1")
        return issues

    @property
    def is_valid(self) -> bool:
        return not self.problems()

    def equals_ignoring_update_time(self, other: "Plan") -> bool:
        """Compare two plans in every field except ``metadata.updated_at``."""
        if not isinstance(other, Plan):
            return False
        left = replace(self, metadata=replace(self.metadata, updated_at=self.metadata.created_at))
        right = replace(other, metadata=replace(other.metadata, updated_at=other.metadata.created_at))
        return left == right

    def completed_criteria_count(self) -> int:
        return sum(1 for criterion in self.acceptance_criteria if criterion.completed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "goal": self.goal,
            "acceptance_criteria": [item.to_dict() for item in self.acceptance_criteria],
            "decisions_made": [item.to_dict() for item in self.decisions_made],
            "decisions_rejected": [item.to_dict() for item in self.decisions_rejected],
            "execution_log": [item.to_dict() for item in self.execution_log],
            "metadata": {
                "created_at": self.metadata.created_at.isoformat(),
                "updated_at": self.metadata.updated_at.isoformat() if self.metadata.updated_at else None,
                "version": self.metadata.version,
            },
        }

