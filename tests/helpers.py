"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files:

    from tests.helpers import ScriptedBackend, tasks_reply
"""

from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Union

from planloop.ai.orchestration.types import ModelInput, ModelOutput, ParsedToolCall

ScriptItem = Union[str, ModelOutput, BaseException, Callable[[ModelInput], Any]]


class ScriptedBackend:
    """Model backend that replays a fixed list of replies.

    Items may be plain text, a :class:`ModelOutput`, an exception to raise, or
    a callable receiving the input. Once the script runs out the ``default``
    reply repeats (or an ``AssertionError`` is raised when there is none).
    """

    def __init__(self, script: Iterable[ScriptItem] = (), *, default: ScriptItem | None = None) -> None:
        self._script = list(script)
        self._default = default
        self.inputs: list[ModelInput] = []

    @property
    def calls(self) -> int:
        return len(self.inputs)

    def phases(self) -> list[str]:
        return [item.phase for item in self.inputs]

    async def complete(self, model_input: ModelInput) -> ModelOutput:
        self.inputs.append(model_input)
        if self._script:
            item = self._script.pop(0)
        elif self._default is not None:
            item = self._default
        else:
            raise AssertionError(f"Unexpected model call #{len(self.inputs)} ({model_input.phase})")
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(model_input)
        if isinstance(item, ModelOutput):
            return item
        return ModelOutput(text=str(item))


def tool_reply(name: str, arguments: dict[str, Any] | None = None, *, call_id: str = "call_1") -> ModelOutput:
    """A reply carrying one native tool call."""

    return ModelOutput(
        text="",
        tool_calls=(ParsedToolCall(call_id=call_id, name=name, arguments=json.dumps(arguments or {})),),
        finish_reason="tool_calls",
    )


def tasks_reply(*tasks: str) -> str:
    return json.dumps({"tasks": list(tasks)})


def summary_reply(**payload: Any) -> str:
    payload.setdefault("action", "Handled the request")
    payload.setdefault("result", "Done")
    return json.dumps(payload)
