"""Tests for tolerant plan parsing."""

from __future__ import annotations

import random
from datetime import datetime, timezone

import pytest

from planloop.plan import CHECKED_GLYPHS, ParseFailure, ParseSuccess, PlanStatus, deserialize

NOW = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


def _parse(text: str) -> ParseSuccess:
    result = deserialize(text, now=NOW)
    assert isinstance(result, ParseSuccess), getattr(result, "diagnosis", "")
    return result


# -----------------------------------------------------------------------------
# Graceful degradation
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("payload", ["", "\n", "   \n\t  "])
def test_blank_input_returns_failure_with_prompt(payload: str) -> None:
    result = deserialize(payload)

    assert isinstance(result, ParseFailure)
    assert result.reason == "empty"
    assert result.corrective_prompt.strip()
    assert "## Acceptance Criteria" in result.corrective_prompt


@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_random_bytes_never_raise(seed: int) -> None:
    rng = random.Random(seed)
    payload = bytes(rng.randrange(256) for _ in range(512))

    result = deserialize(payload)

    if isinstance(result, ParseFailure):
        assert result.corrective_prompt.strip()
    else:
        assert result.plan.is_valid


def test_non_text_input_is_rejected() -> None:
    result = deserialize(12345)

    assert isinstance(result, ParseFailure)
    assert result.reason == "not_text"


def test_binary_text_is_rejected() -> None:
    result = deserialize("## Goal\x00\x00\x01")

    assert isinstance(result, ParseFailure)
    assert result.reason == "binary"


def test_prose_is_not_plan_shaped() -> None:
    text = "I could not produce the plan, sorry. Here is what I did instead."

    result = deserialize(text)

    assert isinstance(result, ParseFailure)
    assert result.reason == "not_plan_shaped"
    assert text in result.corrective_prompt


def test_bytes_with_bom_and_crlf_are_decoded() -> None:
    payload = "\ufeff---\r\nstatus: planning\r\nversion: 4\r\n---\r\n## Goal\r\n\r\nTidy up\r\n".encode("utf-8")

    result = _parse(payload.decode("utf-8-sig"))
    from_bytes = deserialize(payload, now=NOW)

    assert isinstance(from_bytes, ParseSuccess)
    assert from_bytes.plan == result.plan
    assert from_bytes.plan.version == 4
    assert from_bytes.plan.goal == "Tidy up"


# -----------------------------------------------------------------------------
# Header handling
# -----------------------------------------------------------------------------


def test_missing_header_uses_defaults() -> None:
    result = _parse("## Goal\n\nWrite docs\n\n## Acceptance Criteria\n\n- [ ] README exists\n")

    plan = result.plan
    assert plan.status is PlanStatus.PLANNING
    assert plan.version == 1
    assert plan.metadata.created_at == NOW
    assert plan.goal == "Write docs"
    assert "missing header; defaults applied" in result.warnings


def test_comment_header_is_accepted() -> None:
    text = "<!-- status: in_progress\nversion: 3 -->\n## Goal\n\nShip it\n"

    plan = _parse(text).plan

    assert plan.status is PlanStatus.IN_PROGRESS
    assert plan.version == 3


def test_preamble_key_values_act_as_header() -> None:
    text = "Status: **Completed**\nVersion: 9\n\n## Goal\n\nDone deal\n"

    plan = _parse(text).plan

    assert plan.status is PlanStatus.COMPLETED
    assert plan.version == 9


def test_status_without_goal_downgrades_to_planning() -> None:
    result = _parse("---\nstatus: completed\nversion: 2\n---\n## Goal\n\n_No goal defined yet._\n")

    assert result.plan.status is PlanStatus.PLANNING
    assert result.plan.is_valid
    assert any("without a goal" in warning for warning in result.warnings)


def test_unreadable_version_defaults_to_one() -> None:
    result = _parse("---\nstatus: planning\nversion: latest\n---\n## Goal\n\nx\n")

    assert result.plan.version == 1
    assert any("unreadable version" in warning for warning in result.warnings)


def test_updated_at_before_created_at_is_clamped() -> None:
    text = (
        "---\nstatus: planning\ncreated_at: 2024-02-02T00:00:00Z\n"
        "updated_at: 2024-01-01T00:00:00Z\nversion: 1\n---\n## Goal\n\nx\n"
    )

    plan = _parse(text).plan

    assert plan.metadata.updated_at >= plan.metadata.created_at


# -----------------------------------------------------------------------------
# Acceptance criteria
# -----------------------------------------------------------------------------


def test_checked_glyph_count_matches_completed_count() -> None:
    glyphs = sorted(CHECKED_GLYPHS) + ["\u2705\ufe0f", "\u2714\ufe0e"]
    unchecked = [" ", "", "-", "?", "o"]
    lines = [f"- [{glyph}] done item {index}" for index, glyph in enumerate(glyphs)]
    lines += [f"- [{mark}] open item {index}" for index, mark in enumerate(unchecked)]
    random.Random(7).shuffle(lines)
    text = "## Goal\n\nCheck glyphs\n\n## Acceptance Criteria\n\n" + "\n".join(lines) + "\n"

    plan = _parse(text).plan

    assert len(plan.acceptance_criteria) == len(glyphs) + len(unchecked)
    assert plan.completed_criteria_count() == len(glyphs)


def test_criteria_accept_numbered_lists_and_notes() -> None:
    text = (
        "## Acceptance Criteria\n\n"
        "1. [x] Tests pass\n"
        "   - Notes: on CI only\n"
        "2) [ ] Docs updated\n"
        "- Plain bullet counts as open\n"
    )

    criteria = _parse(text).plan.acceptance_criteria

    assert [item.description for item in criteria] == ["Tests pass", "Docs updated", "Plain bullet counts as open"]
    assert criteria[0].completed and criteria[0].notes == "on CI only"
    assert not criteria[1].completed and not criteria[2].completed


def test_placeholder_only_section_equals_missing_section() -> None:
    with_placeholder = _parse(
        "## Goal\n\nx\n\n## Acceptance Criteria\n\n_No acceptance criteria yet._\n\n"
        "## Decisions Made\n\n_No decisions yet._\n"
    )
    without = _parse("## Goal\n\nx\n")

    assert with_placeholder.plan.acceptance_criteria == without.plan.acceptance_criteria == ()
    assert with_placeholder.plan.decisions_made == without.plan.decisions_made == ()


# -----------------------------------------------------------------------------
# Decisions and execution log
# -----------------------------------------------------------------------------


def test_decision_fields_default_when_missing() -> None:
    text = (
        "## Goal\n\nx\n\n## Decisions Made\n\n"
        "### Use SQLite (2024-04-02)\n"
        "**Reason**: small footprint\n\n"
        "### Bare decision\n"
    )

    decisions = _parse(text).plan.decisions_made

    assert [item.title for item in decisions] == ["Use SQLite", "Bare decision"]
    assert decisions[0].rationale == "small footprint"
    assert decisions[0].timestamp == datetime(2024, 4, 2, tzinfo=timezone.utc)
    assert decisions[1].rationale == ""
    assert decisions[1].alternatives == ()
    assert decisions[1].timestamp == NOW


def test_decisions_without_subheadings_use_bullets() -> None:
    text = "## Decisions Rejected\n\n- Rewrite in Go: too risky\n  - Alternatives: keep Python; Rust\n"

    rejected = _parse(text).plan.decisions_rejected

    assert len(rejected) == 1
    assert rejected[0].title == "Rewrite in Go"
    assert rejected[0].rationale == "too risky"
    assert rejected[0].alternatives == ("keep Python", "Rust")


def test_log_entries_parse_tools_and_dates() -> None:
    text = (
        "## Execution Log\n\n"
        "### 2024-05-05 - Listed files\n"
        "- Outcome: found 3 files\n"
        "- Tools used: `list_dir`, read_file\n\n"
        "### Ran tests\n"
        "- Result: (none)\n"
        "- Date: 2024-05-06T10:00:00Z\n"
    )

    log = _parse(text).plan.execution_log

    assert [entry.action for entry in log] == ["Listed files", "Ran tests"]
    assert log[0].result == "found 3 files"
    assert log[0].tools_used == ("list_dir", "read_file")
    assert log[0].timestamp == datetime(2024, 5, 5, tzinfo=timezone.utc)
    assert log[1].result == ""
    assert log[1].timestamp == datetime(2024, 5, 6, 10, tzinfo=timezone.utc)


def test_entry_titled_like_a_section_stays_an_entry() -> None:
    text = (
        "## Goal\n\nx\n\n## Decisions Made\n\n### Progress\n- Rationale: track it\n\n"
        "## Execution Log\n\n### Did things\n- Result: ok\n"
    )

    plan = _parse(text).plan

    assert [item.title for item in plan.decisions_made] == ["Progress"]
    assert [entry.action for entry in plan.execution_log] == ["Did things"]


def test_headings_inside_code_fences_are_ignored() -> None:
    text = "## Goal\n\nShow an example\n\n```\n## Execution Log\n```\n"

    plan = _parse(text).plan

    assert plan.execution_log == ()
    assert "## Execution Log" in plan.goal


def test_only_written_markers_count_as_empty_fields() -> None:
    text = (
        "## Execution Log\n\n"
        "### Checked CI\n"
        "- Result: No failures yet\n"
        "- Tools: none\n"
        "- Date: 2024-05-07\n\n"
        "### Waited\n"
        "- Result: _No result yet._\n"
        "- Tools: (none)\n"
    )

    log = _parse(text).plan.execution_log

    assert log[0].result == "No failures yet"
    assert log[0].tools_used == ()
    assert log[1].result == ""
    assert log[1].tools_used == ()


def test_heading_keeps_hash_that_belongs_to_the_title() -> None:
    text = "## Decisions Made\n\n### Port the CLI to C#\n\n### Closed heading ##\n"

    decisions = _parse(text).plan.decisions_made

    assert [item.title for item in decisions] == ["Port the CLI to C#", "Closed heading"]
