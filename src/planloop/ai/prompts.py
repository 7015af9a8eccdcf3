"""Prompt templates for the three loop phases.

Every phase sends the full plan document in the system message; the phase
instructions below tell the model what kind of reply is expected.
"""

from __future__ import annotations

from typing import Sequence

from ..plan.serializer import expected_layout

__all__ = [
    "base_system_prompt",
    "planning_instructions",
    "execution_instructions",
    "summarization_instructions",
    "correction_system_prompt",
    "format_task_prompt",
    "format_summary_request",
    "MAX_PLANNED_TASKS",
]

MAX_PLANNED_TASKS = 12


def base_system_prompt(*, working_dir: str | None = None, extra: str | None = None) -> str:
    """Instructions shared by every phase."""

    lines = [
        "You are a careful automation assistant working through a user's request step by step.",
        "Your durable memory is the plan document included below. It lists the goal, the acceptance",
        "criteria, the decisions made so far and a log of completed work. Trust it over your own recollection.",
    ]
    if working_dir:
        lines.append(f"The working directory is {working_dir}.")
    if extra and extra.strip():
        lines.extend(["", extra.strip()])
    return "\n".join(lines)


def planning_instructions() -> str:
    return (
        "Phase: PLANNING.\n"
        "Break the user's request into a short ordered list of concrete tasks. Do not call tools yet.\n"
        f"Use at most {MAX_PLANNED_TASKS} tasks; a simple request needs only one.\n"
        'Reply with JSON only: {"tasks": ["first task", "second task"]}'
    )


def execution_instructions(tool_names: Sequence[str]) -> str:
    tools = ", ".join(tool_names) if tool_names else "(no tools are available)"
    return (
        "Phase: EXECUTING.\n"
        f"Available tools: {tools}.\n"
        "Work only on the current task. Call tools when you need information or need to act;\n"
        "independent calls may be requested together. When the task is done, reply with a short\n"
        "plain-text answer describing the outcome and do not call any tool in that reply."
    )


def summarization_instructions() -> str:
    return (
        "Phase: SUMMARIZING.\n"
        "Fold the work just finished into the plan. Reply with JSON only, using these keys:\n"
        '{"action": "what was done, one line", "result": "outcome, one or two sentences",\n'
        ' "goal": "the overall objective (keep the current goal unless it was empty or wrong)",\n'
        ' "status": "in_progress | blocked | completed | failed",\n'
        ' "criteria": [{"description": "...", "completed": false, "notes": "..."}],\n'
        ' "completed_criteria": ["description of an existing criterion now met"],\n'
        ' "decisions_made": [{"title": "...", "rationale": "...", "alternatives": ["..."]}],\n'
        ' "decisions_rejected": [{"title": "...", "rationale": "...", "alternatives": []}]}\n'
        "Omit keys that have nothing to add."
    )


def correction_system_prompt() -> str:
    return (
        "You repair plan documents. Reply with a single markdown plan document in exactly this layout:\n\n"
        + expected_layout()
    )


def format_task_prompt(request: str, tasks: Sequence[str], cursor: int) -> str:
    """The closing user message for one execution-phase model call."""

    total = len(tasks)
    lines = [f"User request: {request}", f"Current task ({cursor + 1} of {total}): {tasks[cursor]}"]
    if cursor + 1 < total:
        lines.append("Remaining after this: " + "; ".join(tasks[cursor + 1:]))
    return "\n".join(lines)


def format_summary_request(request: str, outcome_lines: Sequence[str], cancelled: bool = False) -> str:
    """The closing user message for the summarization call."""

    lines = [f"User request: {request}", "Task outcomes:"]
    if outcome_lines:
        lines.extend(f"- {line}" for line in outcome_lines)
    else:
        lines.append("- (no tasks ran)")
    if cancelled:
        lines.append("The user cancelled before all tasks finished.")
    return "\n".join(lines)
