"""Core type definitions for the orchestration loop.

These immutable dataclasses flow between the context assembler, the model
backend, the tool batch executor and the state machine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Protocol, Sequence, runtime_checkable

from openai.types.chat import ChatCompletionMessageParam

__all__ = [
    "Message",
    "MessageRole",
    "ModelBackend",
    "ModelInput",
    "ModelOutput",
    "ParsedToolCall",
    "ToolCallRecord",
    "TaskOutcome",
]


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    Can be converted to OpenAI's ChatCompletionMessageParam format.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        name: Optional name for tool messages.
        tool_call_id: ID linking a tool result to its call.
        tool_calls: Tool calls made by the assistant.
        metadata: Additional metadata (not sent to the model).
    """

    role: MessageRole
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            payload["tool_calls"] = list(self.tool_calls)
        return payload  # type: ignore[return-value]

    @property
    def size(self) -> int:
        """Characters this message contributes to the model input."""
        total = len(self.content)
        for call in self.tool_calls or ():
            function = call.get("function") or {}
            total += len(str(function.get("name", ""))) + len(str(function.get("arguments", "")))
        return total

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        """Create a system message."""
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        """Create a user message."""
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[Mapping[str, Any]] | None = None,
        **metadata: Any,
    ) -> Message:
        """Create an assistant message."""
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        content: str,
        tool_call_id: str,
        name: str | None = None,
        **metadata: Any,
    ) -> Message:
        """Create a tool result message."""
        return cls(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            metadata=metadata,
        )


# -----------------------------------------------------------------------------
# Model Interaction Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelInput:
    """Everything sent to the model for one call.

    Attributes:
        messages: Ordered chat messages.
        tools: Tool specs in OpenAI function-calling format.
        phase: Loop phase that produced the input, for logging.
    """

    messages: tuple[Message, ...]
    tools: tuple[Mapping[str, Any], ...] = ()
    phase: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))

    @property
    def size(self) -> int:
        """Total characters across all messages."""
        return sum(message.size for message in self.messages)

    def to_chat_params(self) -> list[ChatCompletionMessageParam]:
        return [message.to_chat_param() for message in self.messages]


@dataclass(slots=True, frozen=True)
class ParsedToolCall:
    """A tool call requested by the model.

    Attributes:
        call_id: Unique identifier for this call.
        name: Name of the tool to call.
        arguments: Arguments as a JSON string.
        index: Position in the tool_calls array.
    """

    call_id: str
    name: str
    arguments: str
    index: int = 0


@dataclass(slots=True, frozen=True)
class ModelOutput:
    """Parsed response from the model.

    Attributes:
        text: The text content of the response.
        tool_calls: Native tool calls from the response.
        finish_reason: Why the model stopped generating.
        prompt_tokens: Tokens used in the prompt.
        completion_tokens: Tokens used in the completion.
        model: Model that generated the response.
    """

    text: str
    tool_calls: tuple[ParsedToolCall, ...] = ()
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def has_tool_calls(self) -> bool:
        """Check if the response contains tool calls."""
        return len(self.tool_calls) > 0


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Record of a tool call execution.

    Attributes:
        call_id: Identifier of the call this record answers.
        name: Name of the tool that was called.
        arguments: Arguments passed to the tool.
        result: The tool's output.
        success: Whether the tool executed successfully.
        duration_ms: Execution time in milliseconds.
        error: Error message if the call failed.
    """

    call_id: str
    name: str
    arguments: str | Mapping[str, Any]
    result: str = ""
    success: bool = True
    duration_ms: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for events and logging."""
        return {
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments if isinstance(self.arguments, str) else dict(self.arguments),
            "result": self.result,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class TaskOutcome:
    """How one task in the execution phase ended.

    Attributes:
        task: The task description from the planning phase.
        succeeded: True when the model produced a final answer.
        answer: The final answer, or the last failure reason.
        attempts: Model calls spent on the task.
        tools_used: Distinct tool names called while working on the task.
        error_code: Error code when the task failed.
    """

    task: str
    succeeded: bool
    answer: str = ""
    attempts: int = 0
    tools_used: tuple[str, ...] = ()
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "succeeded": self.succeeded,
            "answer": self.answer,
            "attempts": self.attempts,
            "tools_used": list(self.tools_used),
            "error_code": self.error_code,
        }


# -----------------------------------------------------------------------------
# Backend Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelBackend(Protocol):
    """What the loop needs from a model server: one completion per input.

    Implementations raise :class:`~planloop.errors.BackendUnavailable` on
    timeouts, unreachable hosts and HTTP errors.
    """

    async def complete(self, model_input: ModelInput) -> ModelOutput:
        ...
