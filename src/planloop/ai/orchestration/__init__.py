"""Orchestration loop for plan-driven sessions.

Import order matters: ``types`` has no dependencies inside the package and is
loaded first so the client and memory modules can import it during start-up.
"""

from .types import (
    Message,
    MessageRole,
    ModelBackend,
    ModelInput,
    ModelOutput,
    ParsedToolCall,
    TaskOutcome,
    ToolCallRecord,
)
from .context import ContextAssembler, ContextStats
from .events import EventBus, EventListener, InMemoryEventSink, LoopEvent, LoopEventKind
from .response import (
    FinalAnswer,
    Interpretation,
    Malformed,
    ToolCalls,
    fallback_summary,
    interpret,
    parse_summary,
    parse_task_list,
)
from .state import (
    Aborted,
    AnswerReceived,
    AttemptFailed,
    CancelRequested,
    Executing,
    Idle,
    LoopState,
    Planning,
    RequestReceived,
    Summarizing,
    SummaryRecorded,
    TasksPlanned,
    ToolsExecuted,
    advance,
)
from .tool_call_parser import parse_embedded_tool_calls
from .tools import (
    BatchExecutor,
    DuplicateToolError,
    ToolBatchExecutor,
    ToolExecutionResult,
    ToolRegistry,
    ToolSpec,
)
from .loop import RequestResult, SessionLoop

__all__ = [
    # Types
    "Message",
    "MessageRole",
    "ModelBackend",
    "ModelInput",
    "ModelOutput",
    "ParsedToolCall",
    "TaskOutcome",
    "ToolCallRecord",
    # Context
    "ContextAssembler",
    "ContextStats",
    # Events
    "EventBus",
    "EventListener",
    "InMemoryEventSink",
    "LoopEvent",
    "LoopEventKind",
    # Responses
    "FinalAnswer",
    "Interpretation",
    "Malformed",
    "ToolCalls",
    "fallback_summary",
    "interpret",
    "parse_summary",
    "parse_task_list",
    "parse_embedded_tool_calls",
    # State machine
    "Aborted",
    "AnswerReceived",
    "AttemptFailed",
    "CancelRequested",
    "Executing",
    "Idle",
    "LoopState",
    "Planning",
    "RequestReceived",
    "Summarizing",
    "SummaryRecorded",
    "TasksPlanned",
    "ToolsExecuted",
    "advance",
    # Tools
    "BatchExecutor",
    "DuplicateToolError",
    "ToolBatchExecutor",
    "ToolExecutionResult",
    "ToolRegistry",
    "ToolSpec",
    # Loop
    "RequestResult",
    "SessionLoop",
]
