"""Tests for plan loading with corrective retries."""

from __future__ import annotations

import pytest

from planloop.errors import BackendUnavailable
from planloop.plan import Plan, PlanStatus, RecoveryManager, serialize

GARBAGE = "The model wrote a poem instead of a plan."
GOOD = "---\nstatus: in_progress\nversion: 3\n---\n## Goal\n\nRepair me\n"


class _Corrector:
    def __init__(self, *replies: object) -> None:
        self._replies = list(replies)
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return str(reply)


@pytest.mark.asyncio
async def test_missing_text_yields_new_plan(fixed_now) -> None:
    outcome = await RecoveryManager().load_with_outcome(None, now=fixed_now)

    assert outcome.source == "new"
    assert outcome.plan == Plan.empty(now=fixed_now)


@pytest.mark.asyncio
async def test_valid_text_is_parsed_without_correction() -> None:
    corrector = _Corrector()
    text = serialize(Plan(goal="Keep going", status=PlanStatus.IN_PROGRESS))

    outcome = await RecoveryManager(corrector, max_attempts=2).load_with_outcome(text)

    assert outcome.source == "parsed"
    assert outcome.plan.goal == "Keep going"
    assert corrector.prompts == []


@pytest.mark.asyncio
async def test_corrective_reply_is_used() -> None:
    corrector = _Corrector(GOOD)

    outcome = await RecoveryManager(corrector, max_attempts=1).load_with_outcome(GARBAGE)

    assert outcome.source == "corrected"
    assert outcome.attempts == 1
    assert outcome.plan.goal == "Repair me"
    assert GARBAGE in corrector.prompts[0]


@pytest.mark.asyncio
async def test_exhausted_attempts_fall_back_to_empty_plan(
    fixed_now, caplog: pytest.LogCaptureFixture
) -> None:
    corrector = _Corrector(GARBAGE, "still not a plan")

    with caplog.at_level("WARNING", logger="planloop.plan.recovery"):
        outcome = await RecoveryManager(corrector, max_attempts=2).load_with_outcome(GARBAGE, now=fixed_now)

    assert outcome.fell_back
    assert outcome.attempts == 2
    assert outcome.failure is not None
    assert outcome.plan == Plan.empty(now=fixed_now)
    assert "Falling back to an empty plan" in caplog.text


@pytest.mark.asyncio
async def test_zero_attempts_fall_back_immediately() -> None:
    corrector = _Corrector()

    plan = await RecoveryManager(corrector, max_attempts=0).load(GARBAGE)

    assert plan.is_empty
    assert corrector.prompts == []


@pytest.mark.asyncio
async def test_call_override_beats_configured_budget() -> None:
    corrector = _Corrector(GARBAGE, GOOD)

    outcome = await RecoveryManager(corrector, max_attempts=0).load_with_outcome(GARBAGE, 2)

    assert outcome.source == "corrected"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_timeout_counts_as_an_attempt(timeout_error) -> None:
    corrector = _Corrector(timeout_error, GOOD)

    outcome = await RecoveryManager(corrector, max_attempts=2).load_with_outcome(GARBAGE)

    assert outcome.source == "corrected"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_unreachable_backend_propagates() -> None:
    corrector = _Corrector(BackendUnavailable("connection refused", kind="unreachable"))

    with pytest.raises(BackendUnavailable):
        await RecoveryManager(corrector, max_attempts=3).load(GARBAGE)
