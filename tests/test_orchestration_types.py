"""Tests for orchestration value types."""

from __future__ import annotations

from planloop.ai.orchestration import Message, ModelBackend, ModelInput, ModelOutput, ParsedToolCall, TaskOutcome
from planloop.ai.orchestration.types import ToolCallRecord
from tests.helpers import ScriptedBackend


def test_message_to_chat_param_includes_optional_fields() -> None:
    call = {"id": "c1", "type": "function", "function": {"name": "shell", "arguments": "{}"}}

    assert Message.user("hi").to_chat_param() == {"role": "user", "content": "hi"}
    assert Message.assistant("", tool_calls=[call]).to_chat_param()["tool_calls"] == [call]
    assert Message.tool("out", "c1", name="shell").to_chat_param() == {
        "role": "tool",
        "content": "out",
        "name": "shell",
        "tool_call_id": "c1",
    }


def test_message_size_counts_tool_call_payloads() -> None:
    call = {"function": {"name": "shell", "arguments": '{"a": 1}'}}

    assert Message.assistant("abc", tool_calls=[call]).size == 3 + 5 + 8


def test_model_input_coerces_sequences() -> None:
    model_input = ModelInput(messages=[Message.user("a"), Message.user("bc")], tools=[{"type": "function"}])

    assert isinstance(model_input.messages, tuple)
    assert isinstance(model_input.tools, tuple)
    assert model_input.size == 3
    assert len(model_input.to_chat_params()) == 2


def test_model_output_tool_call_flag() -> None:
    assert not ModelOutput(text="x").has_tool_calls
    assert ModelOutput(text="", tool_calls=[ParsedToolCall("c", "n", "{}")]).has_tool_calls


def test_records_serialize() -> None:
    record = ToolCallRecord("c1", "shell", {"cmd": "ls"}, result="ok")
    outcome = TaskOutcome("t", True, "done", 1, ("shell",))

    assert record.to_dict()["arguments"] == {"cmd": "ls"}
    assert outcome.to_dict()["tools_used"] == ["shell"]


def test_scripted_backend_satisfies_protocol() -> None:
    assert isinstance(ScriptedBackend(), ModelBackend)
