"""Session loop: drives Planning -> Executing -> Summarizing for each request.

The loop owns all I/O (model calls, tool batches, plan storage) and feeds the
results into the pure :func:`~planloop.ai.orchestration.state.advance`
function. The plan is reloaded from the store at the start of every phase and
written back once, at the end of summarization, with an optimistic version
check.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from ...errors import (
    BackendUnavailable,
    ErrorCode,
    PlanInvariantError,
    PlanLoopError,
    PlanStoreError,
    TaskIterationExhausted,
    VersionConflict,
)
from ...plan.deserializer import read_header_version
from ...plan.model import Plan
from ...plan.recovery import LoadOutcome, RecoveryManager
from ...plan.serializer import serialize
from ...plan.store import FilePlanStore, PlanStore
from ...plan.updates import PlanUpdate, apply_update
from ...utils.logging import session_logger
from ..memory.buffers import HistoryWindow, truncate_text
from ..prompts import (
    correction_system_prompt,
    execution_instructions,
    format_summary_request,
    format_task_prompt,
    planning_instructions,
    summarization_instructions,
)
from .context import ContextAssembler
from .events import EventBus, EventListener, LoopEvent, LoopEventKind
from .response import (
    FinalAnswer,
    Malformed,
    ToolCalls,
    collect_tools,
    fallback_summary,
    interpret,
    parse_summary,
    parse_task_list,
    strip_reasoning,
)
from .state import (
    Aborted,
    AnswerReceived,
    AttemptFailed,
    CancelRequested,
    Executing,
    Idle,
    LoopEventInput,
    LoopState,
    RequestReceived,
    Summarizing,
    SummaryRecorded,
    TasksPlanned,
    ToolsExecuted,
    advance,
)
from .tools import BatchExecutor, ToolBatchExecutor, ToolExecutionResult, ToolRegistry
from .types import Message, ModelBackend, ModelInput, ParsedToolCall, TaskOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ...services.settings import SessionConfig

__all__ = ["RequestResult", "SessionLoop"]

_OUTCOME_ANSWER_CHARS = 300
_MALFORMED_FEEDBACK = (
    "Your last reply could not be used ({reason}). Either call one of the available tools "
    "or reply with a plain-text answer for the current task."
)


@dataclass(slots=True, frozen=True)
class RequestResult:
    """What one call to :meth:`SessionLoop.handle_request` produced.

    Attributes:
        request: The user request.
        outcomes: One outcome per task that ran.
        plan: The plan after the cycle (unchanged when the request aborted).
        plan_text: Serialized form of ``plan``.
        persisted: True when the updated plan was written to the store.
        cancelled: True when the user cancelled during execution.
        error: Version conflict, store failure or backend failure surfaced to the user.
    """

    request: str
    outcomes: tuple[TaskOutcome, ...]
    plan: Plan
    plan_text: str
    persisted: bool = False
    cancelled: bool = False
    error: PlanLoopError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def version(self) -> int:
        return self.plan.version


class SessionLoop:
    """Runs user requests through the three-phase plan loop.

    Args:
        config: Static session configuration.
        backend: Model backend; anything with ``async complete(ModelInput)``.
        store: Plan store; defaults to a :class:`FilePlanStore` under the
            configured plan directory.
        registry: Tools advertised to the model.
        executor: Batch executor for tool calls; defaults to a
            :class:`ToolBatchExecutor` over ``registry``.
        session_id: Identifies the plan document in the store.
        listeners: Console/TUI callbacks receiving :class:`LoopEvent` values.
    """

    def __init__(
        self,
        config: SessionConfig,
        backend: ModelBackend,
        *,
        store: PlanStore | None = None,
        registry: ToolRegistry | None = None,
        executor: BatchExecutor | None = None,
        session_id: str = "default",
        listeners: Iterable[EventListener] = (),
    ) -> None:
        self._config = config
        self._backend = backend
        self._log = session_logger(__name__, session_id)
        self._store = store if store is not None else FilePlanStore(config.resolved_plan_dir)
        self._registry = registry if registry is not None else ToolRegistry()
        self._executor = executor or ToolBatchExecutor(self._registry, timeout_seconds=config.tool_timeout_seconds)
        self._session_id = session_id
        self._history = HistoryWindow(
            max_turns=config.history_turns,
            max_replies_per_turn=config.max_replies_per_turn,
            max_reply_chars=config.max_tool_output_chars,
        )
        self._assembler = ContextAssembler(
            working_dir=str(config.working_dir),
            extra_instructions=config.system_prompt,
        )
        self._recovery = RecoveryManager(self._correct_plan, max_attempts=config.recovery_attempts)
        self._events = EventBus()
        for listener in listeners:
            self._events.subscribe(listener)
        self._state: LoopState = Idle()
        self._cancel = threading.Event()
        self._plan: Plan | None = None
        self._base_version: int | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def plan(self) -> Plan | None:
        """The plan as of the last load or successful write."""
        return self._plan

    @property
    def history(self) -> HistoryWindow:
        return self._history

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def store(self) -> PlanStore:
        return self._store

    def subscribe(self, listener: EventListener) -> None:
        self._events.subscribe(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        self._events.unsubscribe(listener)

    def cancel(self) -> None:
        """Ask the running request to stop at the next tool-call boundary."""

        if isinstance(self._state, Executing):
            self._log.info("Cancellation requested")
        self._cancel.set()

    def reset_history(self) -> None:
        """Forget the windowed conversation; the plan is untouched."""

        self._history.clear()

    async def load_plan(self) -> Plan:
        """Load the stored plan, repairing or replacing it when unreadable."""

        outcome = await self._load()
        return outcome.plan

    async def handle_request(self, text: str) -> RequestResult:
        """Run one user request through planning, execution and summarization.

        Raises:
            ValueError: if ``text`` is blank.
            RuntimeError: if another request is still running.
        """

        request = (text or "").strip()
        if not request:
            raise ValueError("Request text is empty")
        if not isinstance(self._state, Idle):
            raise RuntimeError(f"Session {self._session_id} is busy ({self._state.name})")

        self._cancel.clear()
        self._history.begin_turn(request)
        self._transition(RequestReceived(request))
        try:
            await self._run_planning(request)
            await self._run_execution()
            return await self._run_summarization()
        except BackendUnavailable as exc:
            return self._abort(request, exc)
        except Exception:
            self._log.exception("Request failed while %s", self._state.name)
            if not isinstance(self._state, Idle):
                self._transition(Aborted("internal error"))
            raise

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    async def _run_planning(self, request: str) -> None:
        outcome = await self._load()
        self._base_version = outcome.loaded_version
        model_input = self._assembler.build(
            outcome.plan,
            self._history.messages(include_current=False),
            request,
            instructions=planning_instructions(),
            phase="planning",
        )
        try:
            output = await self._backend.complete(model_input)
        except BackendUnavailable as exc:
            if not exc.is_timeout:
                raise
            self._log.warning("Planning call timed out; treating the request as a single task")
            tasks = [request]
        else:
            tasks = parse_task_list(output.text, request)
        self._log.info("Planned %s task(s)", len(tasks))
        self._transition(TasksPlanned(tuple(tasks), max_attempts=self._config.max_task_iterations))

    async def _run_execution(self) -> None:
        plan = (await self._load()).plan
        tool_specs = tuple(self._registry.openai_tools())
        instructions = execution_instructions(self._registry.names())

        while isinstance(self._state, Executing):
            state = self._state
            if self._cancel.is_set():
                self._transition(CancelRequested())
                break

            model_input = self._assembler.build(
                plan,
                self._history.messages(),
                format_task_prompt(state.request, state.tasks, state.cursor),
                instructions=instructions,
                tools=tool_specs,
                phase="executing",
            )
            try:
                output = await self._backend.complete(model_input)
            except BackendUnavailable as exc:
                if not exc.is_timeout:
                    raise
                self._transition(AttemptFailed(exc.message, ErrorCode.BACKEND_TIMEOUT))
            else:
                reply = interpret(output)
                if isinstance(reply, ToolCalls):
                    names = await self._run_tools(reply)
                    self._transition(ToolsExecuted(names))
                elif isinstance(reply, FinalAnswer):
                    self._history.add_reply(Message.assistant(reply.text))
                    self._transition(AnswerReceived(reply.text))
                else:
                    self._record_malformed(reply)
                    self._transition(AttemptFailed(reply.reason))
            self._report_finished_tasks(state)

    async def _run_summarization(self) -> RequestResult:
        state = self._state
        if not isinstance(state, Summarizing):
            raise RuntimeError(f"Cannot summarize from {state.name}")

        plan = (await self._load()).plan
        update = await self._summarize(plan, state)
        version = max(plan.version, self._base_version or 0) + 1
        try:
            updated = apply_update(plan, update, version=version)
        except PlanInvariantError as exc:
            self._log.warning("Summary status rejected (%s); deriving status instead", exc.message)
            updated = apply_update(plan, replace(update, status=None), version=version)

        plan_text = serialize(updated)
        error: PlanLoopError | None = None
        try:
            self._store.save(self._session_id, plan_text, self._base_version)
        except VersionConflict as exc:
            error = exc
            self._emit("error", current=state.name, detail=exc.to_dict())
            stored = self._store.load(self._session_id)
            display_text = stored if stored is not None else plan_text
            result_plan = plan
        except OSError as exc:
            error = PlanStoreError(self._session_id, str(exc))
            self._log.error("Updated plan kept in memory: %s", error.message)
            self._emit("error", current=state.name, detail=error.to_dict())
            self._plan = updated
            display_text = plan_text
            result_plan = updated
        else:
            self._plan = updated
            self._base_version = updated.version
            display_text = plan_text
            result_plan = updated
            self._emit("plan_persisted", current=state.name, plan_text=plan_text, detail={"version": updated.version})

        self._transition(SummaryRecorded(), plan_text=display_text)
        return RequestResult(
            request=state.request,
            outcomes=state.outcomes,
            plan=result_plan,
            plan_text=display_text,
            persisted=error is None,
            cancelled=state.cancelled,
            error=error,
        )

    async def _summarize(self, plan: Plan, state: Summarizing) -> PlanUpdate:
        tools_used = collect_tools(state.outcomes)
        model_input = self._assembler.build(
            plan,
            self._history.messages(),
            format_summary_request(state.request, [_outcome_line(o) for o in state.outcomes], state.cancelled),
            instructions=summarization_instructions(),
            phase="summarizing",
        )
        try:
            output = await self._backend.complete(model_input)
        except BackendUnavailable as exc:
            self._log.warning("Summarization call failed (%s); recording task outcomes directly", exc.kind)
            update = None
        else:
            update = parse_summary(output.text, tools_used=tools_used)
            if update is None:
                self._log.warning("Summarization reply was not usable; recording task outcomes directly")
        if update is None:
            update = fallback_summary(state.request, state.outcomes, cancelled=state.cancelled)
        return update

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _load(self) -> _Loaded:
        text = self._store.load(self._session_id)
        outcome = await self._recovery.load_with_outcome(text)
        if outcome.fell_back:
            self._emit(
                "error",
                current=self._state.name,
                detail={"error": ErrorCode.PARSE_FAILURE, "message": outcome.failure.diagnosis if outcome.failure else ""},
            )
        self._plan = outcome.plan
        return _Loaded(outcome, read_header_version(text))

    async def _correct_plan(self, prompt: str) -> str:
        model_input = ModelInput(
            messages=(Message.system(correction_system_prompt()), Message.user(prompt)),
            phase="correction",
        )
        output = await self._backend.complete(model_input)
        return strip_reasoning(output.text)

    async def _run_tools(self, reply: ToolCalls) -> tuple[str, ...]:
        results = await self._executor.execute_batch(reply.calls)
        group = [Message.assistant(reply.text, tool_calls=[_tool_call_payload(call) for call in reply.calls])]
        group.extend(Message.tool(result.result, result.call_id, name=result.name) for result in results)
        self._history.add_group(group)
        self._emit(
            "tool_batch",
            current=self._state.name,
            detail={"calls": [_result_detail(call, result) for call, result in zip(reply.calls, results)]},
        )
        names: list[str] = []
        for call in reply.calls:
            if call.name not in names:
                names.append(call.name)
        return tuple(names)

    def _record_malformed(self, reply: Malformed) -> None:
        self._log.debug("Malformed reply: %s", reply.reason)
        self._history.add_group(
            [
                Message.assistant(reply.text or "(empty reply)"),
                Message.user(_MALFORMED_FEEDBACK.format(reason=reply.reason)),
            ]
        )

    def _report_finished_tasks(self, before: Executing) -> None:
        after = self._state
        outcomes = after.outcomes if isinstance(after, (Executing, Summarizing)) else ()
        for outcome in outcomes[len(before.outcomes):]:
            if outcome.error_code == ErrorCode.TASK_ITERATION_EXHAUSTED:
                exhausted = TaskIterationExhausted(outcome.task, outcome.attempts, outcome.answer)
                self._log.warning("%s (%s)", exhausted.message, outcome.task)
                self._emit("error", current=after.name, detail=exhausted.to_dict())
            self._emit("task_outcome", current=after.name, detail=outcome.to_dict())

    def _transition(self, event: LoopEventInput, *, plan_text: str | None = None) -> None:
        previous = self._state
        self._state = advance(previous, event)
        self._log.phase = self._state.name
        self._log.debug("%s -> %s on %s", previous.name, self._state.name, type(event).__name__)
        if previous.name != self._state.name:
            self._emit("transition", previous=previous.name, current=self._state.name, plan_text=plan_text)

    def _abort(self, request: str, exc: BackendUnavailable) -> RequestResult:
        state = self._state
        self._log.error("Aborted while %s: %s", state.name, exc.message)
        outcomes = state.outcomes if isinstance(state, (Executing, Summarizing)) else ()
        self._emit("error", current=state.name, detail=exc.to_dict())
        if not isinstance(state, Idle):
            self._transition(Aborted(exc.message))
        plan = self._plan or Plan.empty()
        return RequestResult(
            request=request,
            outcomes=outcomes,
            plan=plan,
            plan_text=serialize(plan),
            error=exc,
        )

    def _emit(
        self,
        kind: LoopEventKind,
        *,
        previous: str | None = None,
        current: str | None = None,
        plan_text: str | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        self._events.emit(
            LoopEvent(
                kind=kind,
                session_id=self._session_id,
                previous=previous,
                current=current,
                plan_text=plan_text,
                detail=dict(detail or {}),
            )
        )


@dataclass(slots=True, frozen=True)
class _Loaded:
    outcome: LoadOutcome
    loaded_version: int | None

    @property
    def plan(self) -> Plan:
        return self.outcome.plan


def _tool_call_payload(call: ParsedToolCall) -> dict[str, Any]:
    return {
        "id": call.call_id,
        "type": "function",
        "function": {"name": call.name, "arguments": call.arguments},
    }


def _result_detail(call: ParsedToolCall, result: ToolExecutionResult) -> dict[str, Any]:
    return result.to_record(call.arguments).to_dict()


def _outcome_line(outcome: TaskOutcome) -> str:
    marker = "done" if outcome.succeeded else "failed"
    answer = truncate_text(outcome.answer.strip(), _OUTCOME_ANSWER_CHARS)
    tools = f" (tools: {', '.join(outcome.tools_used)})" if outcome.tools_used else ""
    return f"[{marker}] {outcome.task}: {answer}{tools}"
