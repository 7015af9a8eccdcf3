"""Sliding window of recent user turns used to build bounded model input."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from ..orchestration.types import Message

__all__ = ["TurnExchange", "HistoryWindow", "truncate_text"]

_TRUNCATION_MARKER = "\n...[truncated {removed} chars]"


def truncate_text(text: str, limit: int) -> str:
    """Clip ``text`` to ``limit`` characters, noting how much was removed."""

    if limit <= 0 or len(text) <= limit:
        return text
    removed = len(text) - limit
    return text[:limit] + _TRUNCATION_MARKER.format(removed=removed)


@dataclass(slots=True)
class TurnExchange:
    """One user turn plus the replies it produced.

    Replies are stored in groups: an assistant message that requested tools
    together with the tool results answering it. Eviction removes whole groups
    so a tool result never outlives the call it answers.
    """

    user: Message
    groups: list[list[Message]] = field(default_factory=list)

    @property
    def reply_count(self) -> int:
        return sum(len(group) for group in self.groups)

    def messages(self) -> list[Message]:
        flattened = [self.user]
        for group in self.groups:
            flattened.extend(group)
        return flattened

    @property
    def size(self) -> int:
        return sum(message.size for message in self.messages())


class HistoryWindow:
    """FIFO window over the last ``max_turns`` user turns.

    Each turn keeps at most ``max_replies_per_turn`` replies (oldest groups
    evicted first) and reply text is clipped to ``max_reply_chars``, so the
    window's size has a fixed upper bound however long the session runs.
    """

    def __init__(
        self,
        *,
        max_turns: int = 5,
        max_replies_per_turn: int = 24,
        max_reply_chars: int = 4000,
    ) -> None:
        self._max_turns = max(1, int(max_turns))
        self._max_replies = max(1, int(max_replies_per_turn))
        self._max_reply_chars = max(0, int(max_reply_chars))
        self._turns: deque[TurnExchange] = deque()
        self._evicted_turns = 0

    @property
    def max_turns(self) -> int:
        return self._max_turns

    @property
    def turns(self) -> list[TurnExchange]:
        return list(self._turns)

    @property
    def current(self) -> TurnExchange | None:
        return self._turns[-1] if self._turns else None

    def __len__(self) -> int:
        return len(self._turns)

    def begin_turn(self, content: str, **metadata: Any) -> TurnExchange:
        """Append a new user turn, evicting the oldest turns beyond the window."""

        exchange = TurnExchange(user=Message.user(content, **metadata))
        self._turns.append(exchange)
        self._trim_turns()
        return exchange

    def add_reply(self, message: Message) -> None:
        """Record a standalone reply (for example a final answer) on the current turn."""

        self.add_group([message])

    def add_group(self, messages: Sequence[Message]) -> None:
        """Record an assistant message and the tool results that answer it."""

        if not messages:
            return
        if not self._turns:
            raise RuntimeError("No active turn; call begin_turn() first")
        exchange = self._turns[-1]
        exchange.groups.append([self._clip(message) for message in messages])
        self._trim_replies(exchange)

    def messages(self, *, include_current: bool = True) -> list[Message]:
        """Flatten the window into chat messages, oldest first."""

        turns: Iterable[TurnExchange] = self._turns
        if not include_current and self._turns:
            turns = list(self._turns)[:-1]
        flattened: list[Message] = []
        for exchange in turns:
            flattened.extend(exchange.messages())
        return flattened

    @property
    def size(self) -> int:
        return sum(exchange.size for exchange in self._turns)

    def clear(self) -> None:
        self._turns.clear()
        self._evicted_turns = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "turn_count": len(self._turns),
            "reply_count": sum(exchange.reply_count for exchange in self._turns),
            "size": self.size,
            "max_turns": self._max_turns,
            "evicted_turns": self._evicted_turns,
        }

    def _clip(self, message: Message) -> Message:
        if message.role not in ("tool", "assistant"):
            return message
        clipped = truncate_text(message.content, self._max_reply_chars)
        if clipped == message.content:
            return message
        return Message(
            role=message.role,
            content=clipped,
            name=message.name,
            tool_call_id=message.tool_call_id,
            tool_calls=message.tool_calls,
            metadata={**message.metadata, "truncated": True},
        )

    def _trim_turns(self) -> None:
        while len(self._turns) > self._max_turns:
            self._turns.popleft()
            self._evicted_turns += 1

    def _trim_replies(self, exchange: TurnExchange) -> None:
        while exchange.reply_count > self._max_replies and len(exchange.groups) > 1:
            exchange.groups.pop(0)
        if exchange.reply_count > self._max_replies:
            # One oversized group: keep its assistant message, drop the oldest results.
            group = exchange.groups[0]
            excess = exchange.reply_count - self._max_replies
            head = 1 if group and group[0].role == "assistant" else 0
            del group[head : head + excess]
            if head:
                group[0] = _drop_unanswered_calls(group[0], group[1:])


def _drop_unanswered_calls(assistant: Message, results: Sequence[Message]) -> Message:
    """Remove tool calls whose results were evicted from the window."""

    if not assistant.tool_calls:
        return assistant
    answered = {message.tool_call_id for message in results}
    kept = tuple(call for call in assistant.tool_calls if call.get("id") in answered)
    if len(kept) == len(assistant.tool_calls):
        return assistant
    return Message(
        role=assistant.role,
        content=assistant.content,
        name=assistant.name,
        tool_call_id=assistant.tool_call_id,
        tool_calls=kept or None,
        metadata={**assistant.metadata, "dropped_calls": len(assistant.tool_calls) - len(kept)},
    )
