"""Plan document model, text format, recovery and storage."""

from .deserializer import (
    CHECKED_GLYPHS,
    ParseFailure,
    ParseResult,
    ParseSuccess,
    build_corrective_prompt,
    deserialize,
    read_header_version,
)
from .model import (
    AcceptanceCriterion,
    Decision,
    ExecutionLogEntry,
    Plan,
    PlanMetadata,
    PlanStatus,
    utcnow,
)
from .recovery import LoadOutcome, RecoveryManager
from .serializer import expected_layout, serialize
from .store import FilePlanStore, InMemoryPlanStore, PlanStore
from .updates import PlanUpdate, apply_update

__all__ = [
    "AcceptanceCriterion",
    "Decision",
    "ExecutionLogEntry",
    "Plan",
    "PlanMetadata",
    "PlanStatus",
    "utcnow",
    "serialize",
    "expected_layout",
    "deserialize",
    "read_header_version",
    "build_corrective_prompt",
    "ParseFailure",
    "ParseResult",
    "ParseSuccess",
    "CHECKED_GLYPHS",
    "RecoveryManager",
    "LoadOutcome",
    "PlanStore",
    "FilePlanStore",
    "InMemoryPlanStore",
    "PlanUpdate",
    "apply_update",
]
