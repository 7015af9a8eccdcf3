"""Tool registry and the concurrent tool batch executor.

The execution phase hands every batch of tool calls from one model response
to a :class:`BatchExecutor`. The reference implementation here runs the calls
concurrently with asyncio and returns one result per call, in call order.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union, runtime_checkable

from ...errors import ErrorCode
from .types import ParsedToolCall, ToolCallRecord

__all__ = [
    "ToolSpec",
    "ToolHandler",
    "ToolRegistration",
    "ToolRegistry",
    "DuplicateToolError",
    "ToolExecutionResult",
    "BatchExecutor",
    "ToolBatchExecutor",
    "format_tool_result_content",
    "parse_tool_arguments",
]

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], Union[Any, Awaitable[Any]]]


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Interface of a tool as advertised to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: What the tool does.
        parameters: JSON Schema for the tool's parameters.
    """

    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


@dataclass(slots=True)
class ToolRegistration:
    """A registered tool: its spec plus the callable that implements it."""

    spec: ToolSpec
    handler: ToolHandler
    enabled: bool = True

    @property
    def name(self) -> str:
        return self.spec.name


class ToolRegistry:
    """Name -> tool lookup shared by the context assembler and the executor.

    Handlers take the parsed argument mapping and may be sync or async.

    Example:
        registry = ToolRegistry()
        registry.register("read_file", read_file, description="Read a file",
                          parameters={"type": "object", "properties": {"path": {"type": "string"}}})
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        parameters: Mapping[str, Any] | None = None,
        allow_override: bool = False,
    ) -> ToolRegistration:
        """Register ``handler`` under ``name``.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        registration = ToolRegistration(
            spec=ToolSpec(name=name, description=description, parameters=dict(parameters or {})),
            handler=handler,
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def set_enabled(self, name: str, enabled: bool) -> None:
        registration = self._tools.get(name)
        if registration is not None:
            registration.enabled = enabled

    def get(self, name: str) -> ToolRegistration | None:
        """Return the registration if found and enabled."""
        registration = self._tools.get(name)
        if registration is None or not registration.enabled:
            return None
        return registration

    def names(self) -> list[str]:
        return [name for name, item in self._tools.items() if item.enabled]

    def specs(self) -> list[ToolSpec]:
        return [item.spec for item in self._tools.values() if item.enabled]

    def openai_tools(self) -> list[dict[str, Any]]:
        """Enabled tools in OpenAI function-calling format, in registration order."""
        return [spec.to_openai_tool() for spec in self.specs()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self.names())


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    """Result from executing a single tool call.

    Attributes:
        call_id: The ID of the tool call.
        name: Name of the tool that was called.
        success: Whether execution succeeded.
        result: Output text (or ``Error: ...`` for failures).
        error: Error message if failed.
        error_code: Machine-readable failure code.
        duration_ms: Execution time in milliseconds.
    """

    call_id: str
    name: str
    success: bool
    result: str
    error: str | None = None
    error_code: str | None = None
    duration_ms: float = 0.0

    @classmethod
    def from_success(cls, call_id: str, name: str, result: Any, duration_ms: float = 0.0) -> ToolExecutionResult:
        """Create a successful result."""
        return cls(
            call_id=call_id,
            name=name,
            success=True,
            result=format_tool_result_content(result),
            duration_ms=duration_ms,
        )

    @classmethod
    def from_error(
        cls,
        call_id: str,
        name: str,
        error: str,
        duration_ms: float = 0.0,
        *,
        error_code: str = ErrorCode.TOOL_ERROR,
    ) -> ToolExecutionResult:
        """Create a failed result."""
        return cls(
            call_id=call_id,
            name=name,
            success=False,
            result=f"Error: {error}",
            error=error,
            error_code=error_code,
            duration_ms=duration_ms,
        )

    def to_record(self, arguments: str | Mapping[str, Any] = "") -> ToolCallRecord:
        """Convert to a ToolCallRecord for events and logging."""
        return ToolCallRecord(
            call_id=self.call_id,
            name=self.name,
            arguments=arguments,
            result=self.result,
            success=self.success,
            duration_ms=self.duration_ms,
            error=self.error,
        )


def format_tool_result_content(result: Any) -> str:
    """Format a tool result for inclusion in a message.

    Args:
        result: The raw tool result.

    Returns:
        String representation of the result.
    """
    if result is None:
        return "null"
    if isinstance(result, str):
        return result
    if isinstance(result, bool):
        return "true" if result else "false"
    if isinstance(result, (int, float)):
        return str(result)
    if isinstance(result, (dict, list, tuple)):
        try:
            return json.dumps(result, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            return str(result)
    if hasattr(result, "to_dict") and callable(result.to_dict):
        try:
            return json.dumps(result.to_dict(), ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            pass
    return str(result)


def parse_tool_arguments(arguments: str) -> dict[str, Any]:
    """Parse tool arguments from a JSON string.

    Raises:
        ValueError: If arguments cannot be parsed into an object.
    """
    if not arguments or arguments.strip() in ("", "{}"):
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in tool arguments: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


# -----------------------------------------------------------------------------
# Batch Execution
# -----------------------------------------------------------------------------


@runtime_checkable
class BatchExecutor(Protocol):
    """Runs a batch of independent tool calls and returns results in call order."""

    async def execute_batch(self, calls: Sequence[ParsedToolCall]) -> Sequence[ToolExecutionResult]:
        ...


class ToolBatchExecutor:
    """Fan-out/fan-in executor over a :class:`ToolRegistry`.

    Every call becomes a result: unknown tools, bad arguments, timeouts and
    handler exceptions are reported as failed results instead of raising.
    """

    def __init__(self, registry: ToolRegistry, *, timeout_seconds: float | None = 30.0) -> None:
        self._registry = registry
        self._timeout = timeout_seconds

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute_batch(self, calls: Sequence[ParsedToolCall]) -> tuple[ToolExecutionResult, ...]:
        """Execute ``calls`` concurrently.

        Args:
            calls: Tool calls from one model response.

        Returns:
            One result per call, in the same order.
        """
        if not calls:
            return ()
        results = await asyncio.gather(*(self.execute_call(call) for call in calls))
        return tuple(results)

    async def execute_call(self, call: ParsedToolCall) -> ToolExecutionResult:
        """Execute a single tool call."""
        start_time = time.perf_counter()

        registration = self._registry.get(call.name)
        if registration is None:
            LOGGER.warning("Model requested unknown tool %s", call.name)
            return ToolExecutionResult.from_error(
                call.call_id,
                call.name,
                f"Unknown tool '{call.name}'",
                error_code=ErrorCode.UNKNOWN_TOOL,
            )

        try:
            arguments = parse_tool_arguments(call.arguments)
        except ValueError as e:
            LOGGER.warning("Failed to parse arguments for tool %s: %s", call.name, e)
            return ToolExecutionResult.from_error(
                call.call_id,
                call.name,
                f"Invalid arguments: {e}",
                _elapsed_ms(start_time),
            )

        try:
            if self._timeout is not None and self._timeout > 0:
                raw_result = await asyncio.wait_for(_invoke(registration.handler, arguments), timeout=self._timeout)
            else:
                raw_result = await _invoke(registration.handler, arguments)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", call.name, self._timeout)
            return ToolExecutionResult.from_error(
                call.call_id,
                call.name,
                f"Tool execution timed out after {self._timeout}s",
                _elapsed_ms(start_time),
            )
        except Exception as e:
            error_msg = str(e) if str(e) else type(e).__name__
            LOGGER.warning("Tool %s failed: %s", call.name, error_msg)
            return ToolExecutionResult.from_error(call.call_id, call.name, error_msg, _elapsed_ms(start_time))

        return ToolExecutionResult.from_success(call.call_id, call.name, raw_result, _elapsed_ms(start_time))


async def _invoke(handler: ToolHandler, arguments: Mapping[str, Any]) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(arguments)
    result = await asyncio.to_thread(handler, arguments)
    if inspect.isawaitable(result):
        return await result
    return result


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000
