"""Interpretation of raw model output for each loop phase."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence, Union

from ...plan.model import AcceptanceCriterion, Decision, ExecutionLogEntry, PlanStatus, utcnow
from ...plan.serializer import clean_line
from ...plan.updates import PlanUpdate
from ..prompts import MAX_PLANNED_TASKS
from .tool_call_parser import load_json_payload, looks_like_tool_attempt, parse_embedded_tool_calls
from .types import ModelOutput, ParsedToolCall, TaskOutcome

__all__ = [
    "ToolCalls",
    "FinalAnswer",
    "Malformed",
    "Interpretation",
    "interpret",
    "strip_reasoning",
    "parse_task_list",
    "parse_summary",
    "fallback_summary",
    "collect_tools",
]

_THINK_RE = re.compile(r"<think>.*?(?:</think>|\Z)", re.DOTALL | re.IGNORECASE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)]|\[\s?\])\s+(?P<text>.+?)\s*$")
_MAX_FIELD_CHARS = 500


# -----------------------------------------------------------------------------
# Execution replies
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCalls:
    """The model asked for one or more tool calls."""

    calls: tuple[ParsedToolCall, ...]
    text: str = ""


@dataclass(slots=True, frozen=True)
class FinalAnswer:
    """The model finished the current task."""

    text: str


@dataclass(slots=True, frozen=True)
class Malformed:
    """The reply was neither usable tool calls nor an answer."""

    reason: str
    text: str = ""


Interpretation = Union[ToolCalls, FinalAnswer, Malformed]


def strip_reasoning(text: str) -> str:
    """Drop ``<think>`` blocks that reasoning models prepend to their answer."""

    return _THINK_RE.sub("", text or "").strip()


def interpret(output: ModelOutput) -> Interpretation:
    """Classify an execution-phase reply.

    Native tool calls win; otherwise tool calls embedded in the text are
    recovered. Text that tries to call a tool but cannot be parsed, or that is
    empty, is :class:`Malformed`.
    """

    text = strip_reasoning(output.text)
    if output.has_tool_calls:
        return ToolCalls(calls=output.tool_calls, text=text)
    embedded = parse_embedded_tool_calls(text)
    if embedded:
        return ToolCalls(calls=tuple(embedded), text=text)
    if looks_like_tool_attempt(text):
        return Malformed("tool call could not be parsed", text)
    if not text:
        reason = "response was cut off" if output.finish_reason == "length" else "empty response"
        return Malformed(reason, text)
    return FinalAnswer(text)


# -----------------------------------------------------------------------------
# Planning replies
# -----------------------------------------------------------------------------


def parse_task_list(text: str, request: str) -> list[str]:
    """Extract the ordered task list from a planning reply.

    Accepts ``{"tasks": [...]}``, a bare JSON list, or a numbered/bulleted
    list. Falls back to the request itself as the single task.
    """

    body = strip_reasoning(text)
    payload = load_json_payload(body, search_embedded=True)
    tasks: list[str] = []
    if isinstance(payload, Mapping):
        payload = payload.get("tasks") or payload.get("steps") or payload.get("plan")
    if isinstance(payload, list):
        tasks = [_task_text(item) for item in payload]
    else:
        for line in body.splitlines():
            match = _LIST_ITEM_RE.match(line)
            if match is not None:
                tasks.append(match.group("text"))

    cleaned: list[str] = []
    seen: set[str] = set()
    for task in tasks:
        value = clean_line(task).strip("*").strip()
        if value and value.lower() not in seen:
            seen.add(value.lower())
            cleaned.append(value)
    if not cleaned:
        return [clean_line(request) or "Respond to the user"]
    return cleaned[:MAX_PLANNED_TASKS]


def _task_text(item: Any) -> str:
    if isinstance(item, Mapping):
        for key in ("task", "description", "title", "name"):
            if item.get(key):
                return str(item[key])
        return ""
    return str(item) if item is not None else ""


# -----------------------------------------------------------------------------
# Summarization replies
# -----------------------------------------------------------------------------


def parse_summary(
    text: str,
    *,
    tools_used: Sequence[str] = (),
    now: datetime | None = None,
) -> PlanUpdate | None:
    """Build a :class:`PlanUpdate` from a JSON summarization reply.

    Returns ``None`` when the reply holds no JSON object with an ``action``
    or ``result``.
    """

    payload = load_json_payload(strip_reasoning(text), search_embedded=True)
    if not isinstance(payload, Mapping):
        return None
    action = _field(payload.get("action"))
    result = _field(payload.get("result") or payload.get("summary"))
    if not action and not result:
        return None
    moment = now or utcnow()
    entry = ExecutionLogEntry(
        action=action or "Worked on the request",
        result=result,
        tools_used=tuple(tools_used),
        timestamp=moment,
    )
    goal = payload.get("goal")
    return PlanUpdate(
        log_entry=entry,
        goal=str(goal).strip() if isinstance(goal, str) and goal.strip() else None,
        status=PlanStatus.parse(payload.get("status")),
        criteria=tuple(_criteria(payload.get("criteria") or payload.get("acceptance_criteria"))),
        completed_criteria=tuple(_strings(payload.get("completed_criteria"))),
        decisions_made=tuple(_decisions(payload.get("decisions_made"), moment)),
        decisions_rejected=tuple(_decisions(payload.get("decisions_rejected"), moment)),
        reject_titles=tuple(_strings(payload.get("reject"))),
    )


def fallback_summary(
    request: str,
    outcomes: Sequence[TaskOutcome],
    *,
    cancelled: bool = False,
    now: datetime | None = None,
) -> PlanUpdate:
    """Deterministic summary built from task outcomes alone."""

    succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
    parts = [f"{succeeded} of {len(outcomes)} task(s) completed."]
    for outcome in outcomes:
        marker = "done" if outcome.succeeded else "failed"
        parts.append(f"[{marker}] {clean_line(outcome.task)}: {_field(outcome.answer)}")
    if cancelled:
        parts.append("Cancelled by the user.")
    entry = ExecutionLogEntry(
        action=_field(request) or "Handled request",
        result=" ".join(parts),
        tools_used=collect_tools(outcomes),
        timestamp=now or utcnow(),
    )
    return PlanUpdate(log_entry=entry)


def collect_tools(outcomes: Iterable[TaskOutcome]) -> tuple[str, ...]:
    """Distinct tool names across ``outcomes``, in first-use order."""

    seen: dict[str, None] = {}
    for outcome in outcomes:
        for tool in outcome.tools_used:
            seen.setdefault(tool, None)
    return tuple(seen)


def _field(value: Any) -> str:
    if value is None:
        return ""
    text = clean_line(str(value))
    if len(text) > _MAX_FIELD_CHARS:
        text = text[: _MAX_FIELD_CHARS - 3].rstrip() + "..."
    return text


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [_field(item) for item in value if _field(item)]


def _criteria(value: Any) -> list[AcceptanceCriterion]:
    if not isinstance(value, list):
        return []
    criteria: list[AcceptanceCriterion] = []
    for item in value:
        if isinstance(item, str):
            description, completed, notes = item, False, None
        elif isinstance(item, Mapping):
            description = item.get("description") or item.get("criterion") or ""
            completed = bool(item.get("completed") or item.get("done"))
            notes = item.get("notes")
        else:
            continue
        description = _field(description)
        if description:
            criteria.append(AcceptanceCriterion(description, completed, _field(notes) or None))
    return criteria


def _decisions(value: Any, moment: datetime) -> list[Decision]:
    if not isinstance(value, list):
        return []
    decisions: list[Decision] = []
    for item in value:
        if isinstance(item, str):
            item = {"title": item}
        if not isinstance(item, Mapping):
            continue
        title = _field(item.get("title") or item.get("decision"))
        if not title:
            continue
        decisions.append(
            Decision(
                title=title,
                rationale=_field(item.get("rationale") or item.get("reason")),
                alternatives=tuple(_strings(item.get("alternatives"))),
                timestamp=moment,
            )
        )
    return decisions

