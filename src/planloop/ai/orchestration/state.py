"""Pure state machine for one request cycle.

The loop driver performs all I/O and feeds the results in as events;
:func:`advance` only computes the next state. Every transition can therefore
be tested without a model, a store or tools.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import ClassVar, Union

from ...errors import ErrorCode, InvalidTransition
from .types import TaskOutcome

__all__ = [
    "Idle",
    "Planning",
    "Executing",
    "Summarizing",
    "LoopState",
    "RequestReceived",
    "TasksPlanned",
    "ToolsExecuted",
    "AnswerReceived",
    "AttemptFailed",
    "CancelRequested",
    "SummaryRecorded",
    "Aborted",
    "LoopEventInput",
    "advance",
]


# -----------------------------------------------------------------------------
# States
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Idle:
    """Waiting for the next user request."""

    name: ClassVar[str] = "Idle"


@dataclass(slots=True, frozen=True)
class Planning:
    """Turning the request into an ordered task list."""

    request: str

    name: ClassVar[str] = "Planning"


@dataclass(slots=True, frozen=True)
class Executing:
    """Working through ``tasks`` one at a time.

    Attributes:
        request: The user request being handled.
        tasks: Ordered task list from the planning phase.
        cursor: Index of the task being worked on.
        attempts: Model calls spent on the current task.
        max_attempts: Model calls allowed per task before it is marked failed.
        outcomes: Outcomes of the tasks before ``cursor``.
        tools_used: Distinct tools called for the current task.
        last_failure: Reason for the latest failed attempt on the current task.
    """

    request: str
    tasks: tuple[str, ...]
    cursor: int = 0
    attempts: int = 0
    max_attempts: int = 10
    outcomes: tuple[TaskOutcome, ...] = ()
    tools_used: tuple[str, ...] = ()
    last_failure: str = ""

    name: ClassVar[str] = "Executing"

    @property
    def current_task(self) -> str:
        return self.tasks[self.cursor]

    @property
    def remaining(self) -> int:
        return len(self.tasks) - self.cursor


@dataclass(slots=True, frozen=True)
class Summarizing:
    """Folding the task outcomes back into the plan."""

    request: str
    outcomes: tuple[TaskOutcome, ...] = ()
    cancelled: bool = False

    name: ClassVar[str] = "Summarizing"


LoopState = Union[Idle, Planning, Executing, Summarizing]


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RequestReceived:
    text: str


@dataclass(slots=True, frozen=True)
class TasksPlanned:
    tasks: tuple[str, ...]
    max_attempts: int = 10


@dataclass(slots=True, frozen=True)
class ToolsExecuted:
    """A model call produced tool calls that have now run."""

    tool_names: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class AnswerReceived:
    text: str


@dataclass(slots=True, frozen=True)
class AttemptFailed:
    """A model call gave nothing usable (malformed reply or timeout)."""

    reason: str
    error_code: str = ErrorCode.TASK_ITERATION_EXHAUSTED


@dataclass(slots=True, frozen=True)
class CancelRequested:
    pass


@dataclass(slots=True, frozen=True)
class SummaryRecorded:
    pass


@dataclass(slots=True, frozen=True)
class Aborted:
    """The request was abandoned, typically because the backend is unavailable."""

    reason: str = ""


LoopEventInput = Union[
    RequestReceived,
    TasksPlanned,
    ToolsExecuted,
    AnswerReceived,
    AttemptFailed,
    CancelRequested,
    SummaryRecorded,
    Aborted,
]


# -----------------------------------------------------------------------------
# Transition Function
# -----------------------------------------------------------------------------


def advance(state: LoopState, event: LoopEventInput) -> LoopState:
    """Return the state that follows ``state`` once ``event`` has happened.

    Raises:
        InvalidTransition: if ``state`` cannot accept ``event``.
    """

    if isinstance(event, Aborted) and not isinstance(state, Idle):
        return Idle()

    if isinstance(state, Idle) and isinstance(event, RequestReceived):
        return Planning(request=event.text)

    if isinstance(state, Planning) and isinstance(event, TasksPlanned):
        tasks = tuple(task for task in event.tasks if task) or (state.request,)
        return Executing(
            request=state.request,
            tasks=tasks,
            max_attempts=max(1, event.max_attempts),
        )

    if isinstance(state, Executing):
        if isinstance(event, ToolsExecuted):
            tools = _merge_tools(state.tools_used, event.tool_names)
            attempts = state.attempts + 1
            if attempts >= state.max_attempts:
                return _finish_task(
                    state,
                    succeeded=False,
                    answer="Stopped after calling tools without reaching an answer",
                    attempts=attempts,
                    tools_used=tools,
                    error_code=ErrorCode.TASK_ITERATION_EXHAUSTED,
                )
            return replace(state, attempts=attempts, tools_used=tools)
        if isinstance(event, AnswerReceived):
            return _finish_task(state, succeeded=True, answer=event.text, attempts=state.attempts + 1)
        if isinstance(event, AttemptFailed):
            attempts = state.attempts + 1
            if attempts >= state.max_attempts:
                return _finish_task(
                    state,
                    succeeded=False,
                    answer=event.reason,
                    attempts=attempts,
                    error_code=ErrorCode.TASK_ITERATION_EXHAUSTED,
                )
            return replace(state, attempts=attempts, last_failure=event.reason)
        if isinstance(event, CancelRequested):
            outcomes = state.outcomes
            if state.attempts:
                outcomes += (
                    TaskOutcome(
                        task=state.current_task,
                        succeeded=False,
                        answer="Cancelled by the user",
                        attempts=state.attempts,
                        tools_used=state.tools_used,
                        error_code=ErrorCode.CANCELLED,
                    ),
                )
            return Summarizing(request=state.request, outcomes=outcomes, cancelled=True)

    if isinstance(state, Summarizing) and isinstance(event, SummaryRecorded):
        return Idle()

    raise InvalidTransition(state.name, type(event).__name__)


def _finish_task(
    state: Executing,
    *,
    succeeded: bool,
    answer: str,
    attempts: int,
    tools_used: tuple[str, ...] | None = None,
    error_code: str | None = None,
) -> LoopState:
    outcome = TaskOutcome(
        task=state.current_task,
        succeeded=succeeded,
        answer=answer,
        attempts=attempts,
        tools_used=state.tools_used if tools_used is None else tools_used,
        error_code=error_code,
    )
    outcomes = state.outcomes + (outcome,)
    cursor = state.cursor + 1
    if cursor >= len(state.tasks):
        return Summarizing(request=state.request, outcomes=outcomes)
    return replace(
        state,
        cursor=cursor,
        attempts=0,
        outcomes=outcomes,
        tools_used=(),
        last_failure="",
    )


def _merge_tools(existing: tuple[str, ...], names: tuple[str, ...]) -> tuple[str, ...]:
    merged = list(existing)
    for name in names:
        if name not in merged:
            merged.append(name)
    return tuple(merged)
