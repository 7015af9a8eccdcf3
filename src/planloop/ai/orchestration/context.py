"""Bounded model input assembly.

Every model call is built from the same three parts, in order: the full
serialized plan (inside the system message), the trailing history window,
and the current request. Nothing else from the session reaches the model,
so input size depends on the plan and the window, never on session age.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ...plan.model import Plan
from ...plan.serializer import serialize
from ..prompts import base_system_prompt
from ..tokens import estimate_tokens
from .types import Message, ModelInput

__all__ = ["ContextAssembler", "ContextStats"]

LOGGER = logging.getLogger(__name__)

PLAN_HEADING = "# Current plan document"


@dataclass(slots=True, frozen=True)
class ContextStats:
    """Size accounting for one assembled input."""

    plan_chars: int
    history_chars: int
    request_chars: int
    message_count: int
    estimated_tokens: int

    @property
    def total_chars(self) -> int:
        return self.plan_chars + self.history_chars + self.request_chars


class ContextAssembler:
    """Builds :class:`ModelInput` values from plan, history and request.

    Args:
        working_dir: Mentioned in the system prompt when given.
        extra_instructions: Appended to the shared system prompt.
    """

    def __init__(self, *, working_dir: str | None = None, extra_instructions: str | None = None) -> None:
        self._preamble = base_system_prompt(working_dir=working_dir, extra=extra_instructions)
        self._last_stats: ContextStats | None = None

    @property
    def last_stats(self) -> ContextStats | None:
        return self._last_stats

    def build(
        self,
        plan: Plan,
        history: Sequence[Message],
        current_turn: str,
        *,
        instructions: str = "",
        tools: Sequence[Mapping[str, Any]] = (),
        phase: str = "",
    ) -> ModelInput:
        """Compose the input for one model call.

        Args:
            plan: The current plan; always included in full.
            history: Windowed history messages, oldest first.
            current_turn: Text of the immediate request.
            instructions: Phase-specific instructions for the system message.
            tools: Tool specs to advertise.
            phase: Phase label carried on the input for logging.

        Returns:
            The assembled :class:`ModelInput`.
        """

        plan_text = serialize(plan)
        system_parts = [self._preamble]
        if instructions:
            system_parts.append(instructions)
        system_parts.append(f"{PLAN_HEADING}\n\n{plan_text}")
        system = Message.system("\n\n".join(system_parts))
        request = Message.user(current_turn)

        messages = (system, *history, request)
        model_input = ModelInput(messages=messages, tools=tuple(tools), phase=phase)

        history_chars = sum(message.size for message in history)
        stats = ContextStats(
            plan_chars=len(plan_text),
            history_chars=history_chars,
            request_chars=len(current_turn),
            message_count=len(messages),
            estimated_tokens=sum(estimate_tokens(message.content) for message in messages),
        )
        self._last_stats = stats
        LOGGER.debug(
            "Assembled %s input: plan=%s history=%s request=%s chars (%s messages, ~%s tokens)",
            phase or "model",
            stats.plan_chars,
            stats.history_chars,
            stats.request_chars,
            stats.message_count,
            stats.estimated_tokens,
        )
        return model_input
