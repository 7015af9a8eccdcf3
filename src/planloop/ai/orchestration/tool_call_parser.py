"""Parsing of tool calls that local models emit as text.

Models served through Ollama often skip the native ``tool_calls`` field and
write the call into the message body instead, either with delimited markers
(``<|tool_call_begin|>name<|tool_sep|>{...}<|tool_call_end|>``) or as a JSON
object. This module recovers both forms.
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any, Mapping

from .types import ParsedToolCall

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "parse_embedded_tool_calls",
    "parse_tool_call_entries",
    "parse_json_tool_calls",
    "looks_like_tool_attempt",
    "normalize_tool_marker_text",
    "parsed_tool_call_id",
    "load_json_payload",
]

# Normalizes stylized glyphs inside <|tool ...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("《"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("》"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("︱"): "|",
        ord("︲"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u1680"): " ",
        ord("\u2000"): " ",
        ord("\u2002"): " ",
        ord("\u2003"): " ",
        ord("\u2009"): " ",
        ord("\u200a"): " ",
        ord("\u200b"): " ",
        ord("\u200c"): " ",
        ord("\u200d"): " ",
        ord("\u202f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)(?:<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>|\Z)",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

_MARKER_HINT_RE = re.compile(r"<\s*\|?\s*tool[\s_]*(?:calls?|sep)", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n(?P<body>.*?)\n?```", re.DOTALL)
_JSON_HINT_RE = re.compile(r"[\"'](?:tool_calls|function_call)[\"']\s*:", re.IGNORECASE)


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def parse_embedded_tool_calls(text: str, start_index: int = 0) -> list[ParsedToolCall]:
    """Parse tool calls written into the message text.

    Marker blocks are tried first, then JSON payloads (bare or fenced).

    Args:
        text: The assistant message text.
        start_index: Starting index for tool call numbering.

    Returns:
        The recovered calls; empty when the text holds none.
    """
    if not text or not isinstance(text, str):
        return []
    normalized = normalize_tool_marker_text(text)
    match = TOOL_CALLS_BLOCK_RE.search(normalized)
    body = match.group("body") if match else normalized
    calls = parse_tool_call_entries(body or "", start_index)
    if calls:
        return calls
    return parse_json_tool_calls(normalized, start_index)


def parse_tool_call_entries(body: str, start_index: int = 0) -> list[ParsedToolCall]:
    """Parse individual marker-delimited entries from a tool calls block body."""
    if not body or not isinstance(body, str):
        return []
    calls: list[ParsedToolCall] = []
    normalized = normalize_tool_marker_text(body)
    for offset, entry_match in enumerate(TOOL_CALL_ENTRY_RE.finditer(normalized)):
        name = (entry_match.group("name") or "").strip().strip("\"' \t\n\r")
        # Some models prefix the name with "function" and a separator.
        name = re.sub(r"^function\s*[:<|>]*\s*", "", name, flags=re.IGNORECASE)
        args_raw = _strip_fence((entry_match.group("args") or "").strip())
        if not name:
            continue
        index = start_index + offset
        calls.append(
            ParsedToolCall(
                call_id=parsed_tool_call_id(name, index),
                name=name,
                arguments=args_raw or "{}",
                index=index,
            )
        )
    return calls


def parse_json_tool_calls(text: str, start_index: int = 0) -> list[ParsedToolCall]:
    """Parse ``{"tool_calls": [...]}`` or ``{"name": ..., "arguments": ...}`` payloads."""
    payload = load_json_payload(text)
    if payload is None:
        return []
    if isinstance(payload, Mapping):
        entries: Any = payload.get("tool_calls")
        if entries is None and isinstance(payload.get("function_call"), Mapping):
            entries = [payload["function_call"]]
        if entries is None:
            entries = [payload]
    else:
        entries = payload
    if not isinstance(entries, list):
        return []

    calls: list[ParsedToolCall] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            return []
        function = entry.get("function") if isinstance(entry.get("function"), Mapping) else entry
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            return []
        if not any(key in function for key in ("arguments", "parameters", "args")):
            return []
        arguments = function.get("arguments", function.get("parameters", function.get("args")))
        index = start_index + len(calls)
        calls.append(
            ParsedToolCall(
                call_id=str(entry.get("id") or parsed_tool_call_id(name.strip(), index)),
                name=name.strip(),
                arguments=_arguments_text(arguments),
                index=index,
            )
        )
    return calls


def looks_like_tool_attempt(text: str) -> bool:
    """Return True when the text appears to be trying to call a tool."""
    if not text:
        return False
    normalized = normalize_tool_marker_text(text)
    return bool(_MARKER_HINT_RE.search(normalized) or _JSON_HINT_RE.search(normalized))


def parsed_tool_call_id(name: str, index: int) -> str:
    """Generate a unique tool call ID for parsed tool calls."""
    return f"parsed_{name}_{index}_{uuid.uuid4().hex[:8]}"


def load_json_payload(text: str, *, search_embedded: bool = False) -> Any:
    """Decode the first JSON object or list found in ``text``.

    Fenced ``json`` blocks are tried first, then the whole text. With
    ``search_embedded`` the outermost ``{...}`` or ``[...]`` span inside
    surrounding prose is tried as well. Returns ``None`` when nothing decodes.
    """
    candidates = [match.group("body").strip() for match in _FENCE_RE.finditer(text)]
    stripped = text.strip()
    candidates.append(stripped)
    if search_embedded:
        for opener, closer in (("{", "}"), ("[", "]")):
            start, end = stripped.find(opener), stripped.rfind(closer)
            if 0 <= start < end:
                candidates.append(stripped[start : end + 1])
    for candidate in candidates:
        if not candidate or candidate[0] not in "[{":
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _strip_fence(text: str) -> str:
    fenced = _FENCE_RE.search(text)
    return fenced.group("body").strip() if fenced else text


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments.strip() or "{}"
    try:
        return json.dumps(arguments, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(arguments)
