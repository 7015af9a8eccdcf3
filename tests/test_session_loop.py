"""End-to-end tests for the session loop with scripted model replies."""

from __future__ import annotations

import pytest

from planloop.ai.orchestration import (
    Idle,
    InMemoryEventSink,
    ModelInput,
    SessionLoop,
    ToolRegistry,
)
from planloop.errors import BackendUnavailable, ErrorCode, PlanStoreError, VersionConflict
from planloop.plan import InMemoryPlanStore, Plan, PlanMetadata, PlanStatus, deserialize, read_header_version, serialize
from tests.helpers import ScriptedBackend, summary_reply, tasks_reply, tool_reply

FULL_CYCLE = [("Idle", "Planning"), ("Planning", "Executing"), ("Executing", "Summarizing"), ("Summarizing", "Idle")]


def _loop(config, backend, store, *, registry=None, sink=None) -> SessionLoop:
    return SessionLoop(
        config,
        backend,
        store=store,
        registry=registry,
        listeners=[sink] if sink is not None else (),
    )


def _stored_plan(store, session_id: str = "default") -> Plan:
    result = deserialize(store.load(session_id))
    return result.plan


# -----------------------------------------------------------------------------
# Happy paths
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_minimal_session_runs_three_phases(session_config, memory_store) -> None:
    backend = ScriptedBackend(
        [tasks_reply("Say hello"), "Hello there!", summary_reply(goal="Greet the user", result="Greeted")]
    )
    sink = InMemoryEventSink()
    loop = _loop(session_config, backend, memory_store, sink=sink)

    result = await loop.handle_request("Say hi")

    assert result.ok and result.persisted and not result.cancelled
    assert backend.phases() == ["planning", "executing", "summarizing"]
    assert sink.transitions() == FULL_CYCLE
    assert isinstance(loop.state, Idle)

    stored = _stored_plan(memory_store)
    assert stored.version == 2
    assert stored.goal == "Greet the user"
    assert stored.status is PlanStatus.IN_PROGRESS
    assert [entry.result for entry in stored.execution_log] == ["Greeted"]
    assert result.plan_text == memory_store.load("default")
    assert sink.of_kind("transition")[-1].plan_text == result.plan_text
    assert sink.of_kind("plan_persisted")[0].detail == {"version": 2}


@pytest.mark.asyncio
async def test_every_call_carries_plan_and_request(session_config, memory_store) -> None:
    backend = ScriptedBackend([tasks_reply("Step"), "Done", summary_reply()])
    loop = _loop(session_config, backend, memory_store)

    await loop.handle_request("Do the step")

    for model_input in backend.inputs:
        system = model_input.messages[0]
        assert system.role == "system"
        assert "## Execution Log" in system.content
        assert model_input.messages[-1].role == "user"
        assert "Do the step" in model_input.messages[-1].content


@pytest.mark.asyncio
async def test_second_request_builds_on_first(session_config, memory_store) -> None:
    backend = ScriptedBackend(
        [
            tasks_reply("one"),
            "first answer",
            summary_reply(action="First"),
            tasks_reply("two"),
            "second answer",
            summary_reply(action="Second"),
        ]
    )
    loop = _loop(session_config, backend, memory_store)

    await loop.handle_request("first request")
    result = await loop.handle_request("second request")

    assert result.version == 3
    assert [entry.action for entry in _stored_plan(memory_store).execution_log] == ["First", "Second"]
    second_planning = backend.inputs[3]
    history_text = [message.content for message in second_planning.messages[1:-1]]
    assert "first request" in history_text
    assert "first answer" in history_text


@pytest.mark.asyncio
async def test_reset_history_keeps_the_plan(session_config, memory_store) -> None:
    backend = ScriptedBackend([tasks_reply("one"), "first answer", summary_reply(action="First")])
    loop = _loop(session_config, backend, memory_store)
    await loop.handle_request("first request")

    loop.reset_history()

    assert len(loop.history) == 0
    assert [entry.action for entry in _stored_plan(memory_store).execution_log] == ["First"]


@pytest.mark.asyncio
async def test_tool_calls_feed_results_back(session_config, memory_store) -> None:
    registry = ToolRegistry()
    registry.register("count_files", lambda args: {"count": 3, "path": args["path"]})
    backend = ScriptedBackend(
        [
            tasks_reply("Count files"),
            tool_reply("count_files", {"path": "src"}),
            "There are 3 files.",
            summary_reply(),
        ]
    )
    sink = InMemoryEventSink()
    loop = _loop(session_config, backend, memory_store, registry=registry, sink=sink)

    result = await loop.handle_request("How many files?")

    outcome = result.outcomes[0]
    assert outcome.succeeded and outcome.attempts == 2
    assert outcome.tools_used == ("count_files",)
    assert _stored_plan(memory_store).execution_log[0].tools_used == ("count_files",)

    follow_up = backend.inputs[2]
    tool_messages = [message for message in follow_up.messages if message.role == "tool"]
    assert len(tool_messages) == 1 and '"count": 3' in tool_messages[0].content
    assert backend.inputs[1].tools[0]["function"]["name"] == "count_files"
    (batch,) = sink.of_kind("tool_batch")
    assert batch.detail["calls"][0]["success"] is True


# -----------------------------------------------------------------------------
# Failure handling
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_malformed_replies_stop_at_iteration_cap(
    session_config, memory_store, caplog: pytest.LogCaptureFixture
) -> None:
    backend = ScriptedBackend([tasks_reply("Impossible")], default="")
    sink = InMemoryEventSink()
    loop = _loop(session_config, backend, memory_store, sink=sink)

    with caplog.at_level("WARNING", logger="planloop.ai.orchestration.loop"):
        result = await loop.handle_request("Try hard")

    assert backend.phases() == ["planning", "executing", "executing", "executing", "summarizing"]
    outcome = result.outcomes[0]
    assert not outcome.succeeded
    assert outcome.attempts == session_config.max_task_iterations
    assert outcome.error_code == ErrorCode.TASK_ITERATION_EXHAUSTED
    assert "Task gave no final answer after 3 attempt(s)" in caplog.text
    assert any(event.detail.get("error") == ErrorCode.TASK_ITERATION_EXHAUSTED for event in sink.of_kind("error"))

    feedback = [message.content for message in backend.inputs[2].messages if message.role == "user"]
    assert any("could not be used (empty response)" in content for content in feedback)
    entry = _stored_plan(memory_store).execution_log[0]
    assert entry.result.startswith("0 of 1 task(s) completed.")
    assert sink.transitions() == FULL_CYCLE


@pytest.mark.asyncio
async def test_log_records_carry_session_and_phase(
    session_config, memory_store, caplog: pytest.LogCaptureFixture
) -> None:
    backend = ScriptedBackend([tasks_reply("Impossible", "Also impossible")], default="")
    loop = SessionLoop(session_config, backend, store=memory_store, session_id="nightly")

    with caplog.at_level("DEBUG", logger="planloop.ai.orchestration.loop"):
        await loop.handle_request("Try hard")

    records = [record for record in caplog.records if record.name == "planloop.ai.orchestration.loop"]
    assert {record.session for record in records} == {"nightly"}
    planned = next(record for record in records if record.getMessage().startswith("Planned"))
    assert planned.phase == "Planning"
    exhausted = next(record for record in records if "no final answer" in record.getMessage())
    assert exhausted.phase == "Executing"


@pytest.mark.asyncio
async def test_failed_task_does_not_stop_later_tasks(session_config, memory_store) -> None:
    backend = ScriptedBackend(
        [tasks_reply("broken", "fine"), "", "", "", "fine answer", summary_reply()],
    )
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("two things")

    assert [outcome.succeeded for outcome in result.outcomes] == [False, True]
    assert result.outcomes[1].answer == "fine answer"


@pytest.mark.asyncio
async def test_unreachable_backend_aborts_to_idle(session_config, memory_store) -> None:
    backend = ScriptedBackend([BackendUnavailable("connection refused", kind="unreachable")])
    sink = InMemoryEventSink()
    loop = _loop(session_config, backend, memory_store, sink=sink)

    result = await loop.handle_request("anything")

    assert not result.ok
    assert isinstance(result.error, BackendUnavailable)
    assert result.error.error_code == ErrorCode.BACKEND_UNAVAILABLE
    assert isinstance(loop.state, Idle)
    assert sink.transitions() == [("Idle", "Planning"), ("Planning", "Idle")]
    assert memory_store.load("default") is None


@pytest.mark.asyncio
async def test_backend_lost_mid_execution_keeps_finished_outcomes(session_config, memory_store) -> None:
    backend = ScriptedBackend(
        [tasks_reply("a", "b"), "a done", BackendUnavailable("HTTP 500", kind="http", status_code=500)]
    )
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("a then b")

    assert [outcome.task for outcome in result.outcomes] == ["a"]
    assert result.error.details["status_code"] == 500
    assert isinstance(loop.state, Idle)


@pytest.mark.asyncio
async def test_planning_timeout_runs_request_as_single_task(session_config, memory_store, timeout_error) -> None:
    backend = ScriptedBackend([timeout_error, "handled", summary_reply()])
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("Just do it")

    assert result.ok
    assert [outcome.task for outcome in result.outcomes] == ["Just do it"]


@pytest.mark.asyncio
async def test_execution_timeout_counts_as_attempt(session_config, memory_store, timeout_error) -> None:
    backend = ScriptedBackend([tasks_reply("slow"), timeout_error, "finally", summary_reply()])
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("Be patient")

    assert result.outcomes[0].succeeded
    assert result.outcomes[0].attempts == 2


@pytest.mark.asyncio
async def test_unusable_summary_falls_back_to_outcomes(session_config, memory_store) -> None:
    backend = ScriptedBackend(
        [tasks_reply("t"), "answer text", BackendUnavailable("refused", kind="unreachable")]
    )
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("Summarize me")

    assert result.ok and result.persisted
    entry = _stored_plan(memory_store).execution_log[0]
    assert entry.action == "Summarize me"
    assert "[done] t: answer text" in entry.result


@pytest.mark.asyncio
async def test_invalid_summary_status_is_derived_instead(session_config, memory_store) -> None:
    backend = ScriptedBackend([tasks_reply("t"), "ok", summary_reply(status="completed")])
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("no goal yet")

    assert result.ok
    assert result.plan.status is PlanStatus.PLANNING
    assert result.plan.is_valid


# -----------------------------------------------------------------------------
# Cancellation and concurrency
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_stops_at_next_tool_boundary(session_config, memory_store) -> None:
    registry = ToolRegistry()
    loop: SessionLoop

    def stop(args):
        loop.cancel()
        return "stopping"

    registry.register("stop", stop)
    backend = ScriptedBackend([tasks_reply("first", "second"), tool_reply("stop"), summary_reply()])
    loop = _loop(session_config, backend, memory_store, registry=registry)

    result = await loop.handle_request("Start then stop")

    assert result.cancelled and result.persisted
    assert backend.phases() == ["planning", "executing", "summarizing"]
    assert [outcome.error_code for outcome in result.outcomes] == [ErrorCode.CANCELLED]
    assert "cancelled" in backend.inputs[-1].messages[-1].content.lower()


@pytest.mark.asyncio
async def test_external_edit_between_phases_is_a_version_conflict(session_config, memory_store) -> None:
    external = serialize(
        Plan(goal="Edited by hand", status=PlanStatus.IN_PROGRESS, metadata=PlanMetadata(version=9))
    )

    def edit_then_summarize(model_input: ModelInput) -> str:
        memory_store.put("default", external)
        return summary_reply(goal="Mine")

    backend = ScriptedBackend([tasks_reply("t"), "ok", edit_then_summarize])
    sink = InMemoryEventSink()
    loop = _loop(session_config, backend, memory_store, sink=sink)

    result = await loop.handle_request("race me")

    assert isinstance(result.error, VersionConflict)
    assert result.error.message == "plan changed externally, please retry"
    assert not result.persisted
    assert memory_store.load("default") == external
    assert result.plan_text == external
    assert sink.of_kind("transition")[-1].plan_text == external
    assert isinstance(loop.state, Idle)


class _ReadOnlyStore(InMemoryPlanStore):
    def save(self, session_id: str, text: str, expected_version: int | None) -> int | None:
        raise PermissionError("read-only plan directory")


@pytest.mark.asyncio
async def test_store_write_failure_keeps_the_updated_plan(session_config) -> None:
    store = _ReadOnlyStore()
    backend = ScriptedBackend([tasks_reply("Say hello"), "Hello!", summary_reply(goal="Greet", action="Greeted")])
    sink = InMemoryEventSink()
    loop = _loop(session_config, backend, store, sink=sink)

    result = await loop.handle_request("say hello")

    assert isinstance(result.error, PlanStoreError)
    assert "read-only plan directory" in result.error.message
    assert not result.persisted
    assert result.plan.goal == "Greet"
    assert [entry.action for entry in result.plan.execution_log] == ["Greeted"]
    assert result.plan_text == serialize(result.plan)
    assert loop.plan == result.plan
    assert store.load("default") is None
    assert sink.of_kind("error")[-1].detail["error"] == ErrorCode.STORE_FAILURE
    assert isinstance(loop.state, Idle)


@pytest.mark.asyncio
async def test_request_validation(session_config, memory_store) -> None:
    loop = _loop(session_config, ScriptedBackend(), memory_store)

    with pytest.raises(ValueError):
        await loop.handle_request("   ")


# -----------------------------------------------------------------------------
# Plan recovery inside the loop
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unreadable_plan_is_replaced_when_correction_is_disabled(session_config, memory_store) -> None:
    memory_store.put("default", "this is not a plan at all")
    config = session_config.with_updates(recovery_attempts=0)
    backend = ScriptedBackend([tasks_reply("t"), "ok", summary_reply(goal="Fresh start")])
    sink = InMemoryEventSink()
    loop = _loop(config, backend, memory_store, sink=sink)

    result = await loop.handle_request("carry on")

    assert result.ok
    assert result.version == 2
    assert _stored_plan(memory_store).goal == "Fresh start"
    assert any(event.detail.get("error") == ErrorCode.PARSE_FAILURE for event in sink.of_kind("error"))


@pytest.mark.asyncio
async def test_unreadable_plan_is_repaired_by_the_model(session_config, memory_store) -> None:
    memory_store.put("default", "this is not a plan at all")
    repaired = "---\nstatus: in_progress\nversion: 4\n---\n## Goal\n\nRecovered goal\n"
    replies = {"planning": [tasks_reply("t")], "executing": ["ok"], "summarizing": [summary_reply()]}

    def route(model_input: ModelInput) -> str:
        if model_input.phase == "correction":
            return repaired
        return replies[model_input.phase].pop(0)

    backend = ScriptedBackend(default=route)
    loop = _loop(session_config, backend, memory_store)

    result = await loop.handle_request("carry on")

    assert result.ok
    assert result.plan.goal == "Recovered goal"
    assert result.version == 5
    assert read_header_version(memory_store.load("default")) == 5
    assert backend.phases().count("correction") == 3
