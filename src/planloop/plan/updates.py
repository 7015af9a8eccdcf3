"""Plan mutations produced by the summarization phase."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from ..errors import PlanInvariantError
from .model import AcceptanceCriterion, Decision, ExecutionLogEntry, Plan, PlanStatus, utcnow

__all__ = ["PlanUpdate", "apply_update"]


@dataclass(slots=True, frozen=True)
class PlanUpdate:
    """Everything one summarization folds back into the plan.

    Attributes:
        log_entry: The execution-log entry for the finished cycle.
        goal: Replacement goal; ``None`` or blank keeps the current one.
        status: Explicit status; ``None`` lets :func:`apply_update` derive it.
        criteria: Criteria to add, or to update when the description matches.
        completed_criteria: Descriptions of existing criteria to tick.
        decisions_made: Decisions to append to the accepted list.
        decisions_rejected: Decisions to append to the rejected list.
        reject_titles: Titles of accepted decisions to move to the rejected list.
    """

    log_entry: ExecutionLogEntry | None = None
    goal: str | None = None
    status: PlanStatus | None = None
    criteria: tuple[AcceptanceCriterion, ...] = ()
    completed_criteria: tuple[str, ...] = ()
    decisions_made: tuple[Decision, ...] = ()
    decisions_rejected: tuple[Decision, ...] = ()
    reject_titles: tuple[str, ...] = ()


def apply_update(
    plan: Plan,
    update: PlanUpdate,
    *,
    version: int,
    now: datetime | None = None,
) -> Plan:
    """Return a new plan with ``update`` applied and metadata bumped to ``version``.

    Raises:
        PlanInvariantError: if the result would carry a non-planning status
            without a goal.
    """

    moment = now or utcnow()
    goal = update.goal.strip() if update.goal and update.goal.strip() else plan.goal
    criteria = _merge_criteria(plan.acceptance_criteria, update.criteria, update.completed_criteria)
    made, rejected = _move_rejected(plan.decisions_made, plan.decisions_rejected, update.reject_titles)
    made = made + tuple(update.decisions_made)
    rejected = rejected + tuple(update.decisions_rejected)
    log = plan.execution_log + ((update.log_entry,) if update.log_entry is not None else ())

    status = update.status or _derive_status(plan.status, goal, criteria)
    if status is not PlanStatus.PLANNING and not goal.strip():
        raise PlanInvariantError(
            f"status '{status.value}' requires a non-empty goal",
            status=status.value,
        )

    return Plan(
        status=status,
        goal=goal,
        acceptance_criteria=criteria,
        decisions_made=made,
        decisions_rejected=rejected,
        execution_log=log,
        metadata=plan.metadata.touched(now=moment, version=version),
    )


def _key(text: str) -> str:
    return " ".join(text.lower().split())


def _merge_criteria(
    existing: tuple[AcceptanceCriterion, ...],
    incoming: Iterable[AcceptanceCriterion],
    completed: Iterable[str],
) -> tuple[AcceptanceCriterion, ...]:
    merged = list(existing)
    index = {_key(item.description): position for position, item in enumerate(merged)}
    for criterion in incoming:
        key = _key(criterion.description)
        if not key:
            continue
        if key in index:
            current = merged[index[key]]
            merged[index[key]] = AcceptanceCriterion(
                description=current.description,
                completed=current.completed or criterion.completed,
                notes=criterion.notes or current.notes,
            )
        else:
            index[key] = len(merged)
            merged.append(criterion)
    for description in completed:
        position = index.get(_key(description))
        if position is None:
            continue
        current = merged[position]
        merged[position] = AcceptanceCriterion(current.description, True, current.notes)
    return tuple(merged)


def _move_rejected(
    made: tuple[Decision, ...],
    rejected: tuple[Decision, ...],
    titles: Iterable[str],
) -> tuple[tuple[Decision, ...], tuple[Decision, ...]]:
    wanted = {_key(title) for title in titles if title.strip()}
    if not wanted:
        return made, rejected
    keep = tuple(decision for decision in made if _key(decision.title) not in wanted)
    moved = tuple(decision for decision in made if _key(decision.title) in wanted)
    return keep, rejected + moved


def _derive_status(
    current: PlanStatus,
    goal: str,
    criteria: tuple[AcceptanceCriterion, ...],
) -> PlanStatus:
    if not goal.strip():
        return PlanStatus.PLANNING
    if criteria and all(item.completed for item in criteria):
        return PlanStatus.COMPLETED
    if current in (PlanStatus.PLANNING, PlanStatus.COMPLETED):
        return PlanStatus.IN_PROGRESS
    return current
