"""Deterministic Plan -> markdown rendering.

The output is what gets written to disk and what the model reads on every
call, so it is plain markdown with a small front-matter header for the
machine-readable fields.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Sequence

from .model import (
    AcceptanceCriterion,
    Decision,
    ExecutionLogEntry,
    Plan,
    PlanMetadata,
    PlanStatus,
    clean_line,
)

__all__ = [
    "serialize",
    "expected_layout",
    "clean_line",
    "HEADER_FENCE",
    "SECTION_TITLES",
    "PLACEHOLDERS",
    "EMPTY_FIELD",
]

HEADER_FENCE = "---"
EMPTY_FIELD = "(none)"

SECTION_TITLES: tuple[str, ...] = (
    "Goal",
    "Acceptance Criteria",
    "Decisions Made",
    "Decisions Rejected",
    "Execution Log",
)

PLACEHOLDERS: dict[str, str] = {
    "Goal": "_No goal defined yet._",
    "Acceptance Criteria": "_No acceptance criteria yet._",
    "Decisions Made": "_No decisions yet._",
    "Decisions Rejected": "_No decisions yet._",
    "Execution Log": "_No execution log entries yet._",
}

# A goal line that would read back as a heading gets one extra leading backslash.
_GOAL_HEADING_RE = re.compile(r"^(\\*#{1,6}[ \t])", re.MULTILINE)


def serialize(plan: Plan) -> str:
    """Render ``plan`` as markdown.

    Args:
        plan: The plan to render.

    Returns:
        The document text, ending in a single newline.
    """

    blocks: list[str] = [_render_header(plan), "# Plan"]
    blocks.extend(_render_section(title, plan) for title in SECTION_TITLES)
    return "\n\n".join(blocks).rstrip("\n") + "\n"


def _escape_goal(text: str) -> str:
    """Keep heading-like lines in the goal from opening a new section."""

    return _GOAL_HEADING_RE.sub(r"\\\1", text)


def expected_layout() -> str:
    """Return an example document showing every section in its canonical form."""

    moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
    sample = Plan(
        status=PlanStatus.IN_PROGRESS,
        goal="<one paragraph describing the objective>",
        acceptance_criteria=(
            AcceptanceCriterion("<criterion that is done>", completed=True, notes="<optional notes>"),
            AcceptanceCriterion("<criterion still open>"),
        ),
        decisions_made=(
            Decision("<decision title>", "<why>", ("<alternative considered>",), moment),
        ),
        decisions_rejected=(),
        execution_log=(
            ExecutionLogEntry("<what was done>", "<outcome>", ("<tool name>",), moment),
        ),
        metadata=PlanMetadata(created_at=moment, updated_at=moment, version=1),
    )
    return serialize(sample)


# -----------------------------------------------------------------------------
# Sections
# -----------------------------------------------------------------------------


def _render_header(plan: Plan) -> str:
    metadata = plan.metadata
    updated = metadata.updated_at or metadata.created_at
    lines = [
        HEADER_FENCE,
        f"status: {plan.status.value}",
        f"created_at: {_format_time(metadata.created_at)}",
        f"updated_at: {_format_time(updated)}",
        f"version: {metadata.version}",
        HEADER_FENCE,
    ]
    return "\n".join(lines)


def _render_section(title: str, plan: Plan) -> str:
    if title == "Goal":
        body = _escape_goal(plan.goal.strip())
    elif title == "Acceptance Criteria":
        body = _render_criteria(plan.acceptance_criteria)
    elif title == "Decisions Made":
        body = _render_decisions(plan.decisions_made)
    elif title == "Decisions Rejected":
        body = _render_decisions(plan.decisions_rejected)
    else:
        body = _render_log(plan.execution_log)
    return f"## {title}\n\n{body or PLACEHOLDERS[title]}"


def _render_criteria(criteria: Sequence[AcceptanceCriterion]) -> str:
    lines: list[str] = []
    for criterion in criteria:
        mark = "x" if criterion.completed else " "
        lines.append(f"- [{mark}] {clean_line(criterion.description)}")
        if criterion.notes:
            lines.append(f"  - Notes: {clean_line(criterion.notes)}")
    return "\n".join(lines)


def _render_decisions(decisions: Sequence[Decision]) -> str:
    entries: list[str] = []
    for decision in decisions:
        lines = [
            f"### {clean_line(decision.title) or EMPTY_FIELD}",
            f"- Rationale: {clean_line(decision.rationale) or EMPTY_FIELD}",
        ]
        if decision.alternatives:
            lines.append("- Alternatives:")
            lines.extend(f"  - {clean_line(item)}" for item in decision.alternatives)
        else:
            lines.append(f"- Alternatives: {EMPTY_FIELD}")
        lines.append(f"- Date: {_format_time(decision.timestamp)}")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


def _render_log(entries: Sequence[ExecutionLogEntry]) -> str:
    rendered: list[str] = []
    for entry in entries:
        tools = ", ".join(clean_line(tool) for tool in entry.tools_used) or EMPTY_FIELD
        lines = [
            f"### {clean_line(entry.action) or EMPTY_FIELD}",
            f"- Result: {clean_line(entry.result) or EMPTY_FIELD}",
            f"- Tools: {tools}",
            f"- Date: {_format_time(entry.timestamp)}",
        ]
        rendered.append("\n".join(lines))
    return "\n\n".join(rendered)


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.isoformat()
