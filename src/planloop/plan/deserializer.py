"""Tolerant markdown -> Plan parsing.

The producer of a plan document is often a language model, so this parser
works defaults-first: a missing header, section or field becomes a default
value. Only input that is not recognizably a plan at all yields a
:class:`ParseFailure`, which carries the prompt the recovery manager sends
back to the model.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Iterable, Mapping, Union

from ..utils.file_io import decode_text
from .model import (
    AcceptanceCriterion,
    Decision,
    ExecutionLogEntry,
    Plan,
    PlanMetadata,
    PlanStatus,
    utcnow,
)
from .serializer import EMPTY_FIELD, PLACEHOLDERS, expected_layout

__all__ = [
    "ParseFailure",
    "ParseSuccess",
    "ParseResult",
    "CHECKED_GLYPHS",
    "deserialize",
    "read_header_version",
    "build_corrective_prompt",
]

LOGGER = logging.getLogger(__name__)

CHECKED_GLYPHS: frozenset[str] = frozenset({"x", "X", "✓", "✔", "☑", "✅", "*", "🗸"})

_VARIATION_SELECTORS = {"\ufe0e", "\ufe0f"}
_EMPTY_VALUES = {"", EMPTY_FIELD.lower(), "none", "n/a", "na", "-", "null", "[]"}
_WRITTEN_EMPTY = frozenset({EMPTY_FIELD, *PLACEHOLDERS.values()})
_EXCERPT_LIMIT = 2000

_SECTION_ALIASES: dict[str, str] = {
    "goal": "goal",
    "objective": "goal",
    "goals": "goal",
    "acceptance criteria": "criteria",
    "criteria": "criteria",
    "success criteria": "criteria",
    "decisions made": "decisions_made",
    "decisions": "decisions_made",
    "accepted decisions": "decisions_made",
    "decisions rejected": "decisions_rejected",
    "rejected decisions": "decisions_rejected",
    "rejected": "decisions_rejected",
    "execution log": "execution_log",
    "log": "execution_log",
    "history": "execution_log",
    "progress": "execution_log",
}

_FIELD_ALIASES: dict[str, str] = {
    "rationale": "rationale",
    "reason": "rationale",
    "why": "rationale",
    "alternatives": "alternatives",
    "alternatives considered": "alternatives",
    "options": "alternatives",
    "result": "result",
    "outcome": "result",
    "tools": "tools",
    "tools used": "tools",
    "tool": "tools",
    "date": "date",
    "timestamp": "date",
    "time": "date",
    "when": "date",
    "notes": "notes",
    "note": "notes",
    "action": "action",
    "title": "title",
}

_HEADER_RE = re.compile(r"\A\s*---[ \t]*\n(?P<body>.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)
_COMMENT_HEADER_RE = re.compile(r"\A\s*<!--(?P<body>.*?)-->[ \t]*(?:\n|\Z)", re.DOTALL)
_HEADING_RE = re.compile(r"^(?P<hashes>#{1,6})[ \t]+(?P<title>.+?)(?:[ \t]+#+)?[ \t]*$")
_KEY_VALUE_RE = re.compile(r"^\s*(?:[-*+][ \t]+)?\**(?P<key>[A-Za-z][A-Za-z _-]*?)\**[ \t]*:\**[ \t]*(?P<value>.*)$")
_CHECKBOX_RE = re.compile(r"^(?P<indent>[ \t]*)(?:[-*+]|\d+[.)])[ \t]+\[(?P<mark>[^\]]{0,4})\][ \t]*(?P<text>.*)$")
_BULLET_RE = re.compile(r"^(?P<indent>[ \t]*)(?:[-*+]|\d+[.)])[ \t]+(?P<text>.+)$")
_DATE_TEXT = r"\d{4}-\d{2}-\d{2}(?:[T ][0-9:.]+(?:Z|[+-]\d{2}:?\d{2})?)?"
_TRAILING_DATE_RE = re.compile(rf"^(?P<title>.*?)[ \t]*(?:\((?P<paren>{_DATE_TEXT})\)|[-–—@|][ \t]*(?P<bare>{_DATE_TEXT}))[ \t]*$")
_LEADING_DATE_RE = re.compile(rf"^\[?(?P<date>{_DATE_TEXT})\]?[ \t]*[-–—:|]?[ \t]*(?P<title>.*)$")
_PLACEHOLDER_RE = re.compile(r"^[_*(]+[ \t]*no\b.*\byet\b[.!]?[ \t]*[_*)]+$", re.IGNORECASE)
_ESCAPED_HEADING_RE = re.compile(r"^\\(\\*#{1,6}[ \t])", re.MULTILINE)


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ParseFailure:
    """The input is not recognizably a plan document."""

    reason: str
    diagnosis: str
    corrective_prompt: str

    ok: ClassVar[bool] = False


@dataclass(slots=True, frozen=True)
class ParseSuccess:
    """A plan extracted from text, with notes about anything that was defaulted."""

    plan: Plan
    warnings: tuple[str, ...] = ()

    ok: ClassVar[bool] = True


ParseResult = Union[ParseSuccess, ParseFailure]


def build_corrective_prompt(diagnosis: str, original: str | None = None) -> str:
    """Return the instruction sent to the model to re-emit a readable plan."""

    parts = [
        f"The plan document could not be read: {diagnosis}",
        "Re-emit the complete plan as markdown using exactly this layout, "
        "including the header block between the --- lines:",
        expected_layout().rstrip(),
    ]
    excerpt = (original or "").strip()
    if excerpt:
        if len(excerpt) > _EXCERPT_LIMIT:
            excerpt = excerpt[:_EXCERPT_LIMIT] + "\n..."
        parts.append(f"The unreadable document was:\n```\n{excerpt}\n```")
    parts.append("Reply with the plan document only, no commentary.")
    return "\n\n".join(parts)


def _failure(reason: str, diagnosis: str, original: str | None = None) -> ParseFailure:
    return ParseFailure(
        reason=reason,
        diagnosis=diagnosis,
        corrective_prompt=build_corrective_prompt(diagnosis, original),
    )


# -----------------------------------------------------------------------------
# Entry points
# -----------------------------------------------------------------------------


def deserialize(data: Any, *, now: datetime | None = None) -> ParseResult:
    """Parse plan text without ever raising.

    Args:
        data: Document text. Bytes are decoded; any other type is rejected.
        now: Time used for defaulted timestamps.

    Returns:
        :class:`ParseSuccess` when the text is plan-shaped, otherwise
        :class:`ParseFailure`.
    """

    moment = now or utcnow()
    if isinstance(data, (bytes, bytearray)):
        try:
            text = decode_text(bytes(data))
        except UnicodeDecodeError:
            return _failure("undecodable", "the document is not valid text")
    elif isinstance(data, str):
        text = data.replace("\r\n", "\n").replace("\r", "\n")
    else:
        return _failure("not_text", f"expected text but received {type(data).__name__}")

    if "\x00" in text:
        return _failure("binary", "the document contains binary data")
    if not text.strip():
        return _failure("empty", "the document is empty")

    try:
        return _parse(text, moment)
    except (ValueError, TypeError, OverflowError) as exc:  # pragma: no cover - parser is defaults-first
        LOGGER.warning("Unexpected plan parsing error: %s", exc)
        return _failure("unparseable", f"the document could not be parsed ({exc})", text)


def read_header_version(text: str | None) -> int | None:
    """Return the version recorded in the header block, or ``None`` when absent."""

    if not text:
        return None
    header, _ = _split_header(text.replace("\r\n", "\n"))
    if header is None:
        return None
    return _parse_int(header.get("version"))


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def _parse(text: str, moment: datetime) -> ParseResult:
    warnings: list[str] = []
    header, body = _split_header(text)
    sections, preamble = _split_sections(body)

    if header is None:
        header = _key_values(preamble) or None
    if header is None and not sections:
        return _failure(
            "not_plan_shaped",
            "no header block and none of the expected sections (Goal, Acceptance Criteria, "
            "Decisions Made, Decisions Rejected, Execution Log) were found",
            text,
        )
    if header is None:
        warnings.append("missing header; defaults applied")
        header = {}

    created_at = _parse_time(header.get("created_at")) or moment
    updated_at = _parse_time(header.get("updated_at")) or created_at
    version = _parse_int(header.get("version"))
    if version is None:
        version = 1
        if "version" in header:
            warnings.append(f"unreadable version {header['version']!r}; using 1")

    status = PlanStatus.coerce(header.get("status"))
    goal = _parse_goal(sections.get("goal", []))
    if status is not PlanStatus.PLANNING and not goal:
        warnings.append(f"status '{status.value}' without a goal; using 'planning'")
        status = PlanStatus.PLANNING

    plan = Plan(
        status=status,
        goal=goal,
        acceptance_criteria=_parse_criteria(sections.get("criteria", [])),
        decisions_made=tuple(_parse_decisions(sections.get("decisions_made", []), moment)),
        decisions_rejected=tuple(_parse_decisions(sections.get("decisions_rejected", []), moment)),
        execution_log=tuple(_parse_log(sections.get("execution_log", []), moment)),
        metadata=PlanMetadata(created_at=created_at, updated_at=updated_at, version=version),
    )
    for warning in warnings:
        LOGGER.debug("Plan parse: %s", warning)
    return ParseSuccess(plan=plan, warnings=tuple(warnings))


def _split_header(text: str) -> tuple[dict[str, str] | None, str]:
    for pattern in (_HEADER_RE, _COMMENT_HEADER_RE):
        match = pattern.match(text)
        if match is None:
            continue
        fields = _key_values(match.group("body").splitlines())
        if fields:
            return fields, text[match.end():]
    return None, text


def _key_values(lines: Iterable[str]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in lines:
        match = _KEY_VALUE_RE.match(line)
        if match is None:
            continue
        key = _normalize_header_key(match.group("key"))
        if key and key not in fields:
            fields[key] = match.group("value").strip().strip("`*\"'")
    return fields


def _normalize_header_key(raw: str) -> str | None:
    compact = re.sub(r"[^a-z]", "", raw.lower())
    return {
        "status": "status",
        "createdat": "created_at",
        "created": "created_at",
        "updatedat": "updated_at",
        "updated": "updated_at",
        "modified": "updated_at",
        "version": "version",
    }.get(compact)


def _split_sections(body: str) -> tuple[dict[str, list[str]], list[str]]:
    """Map each known section to its body lines; the first occurrence wins."""

    lines = body.split("\n")
    headings: list[tuple[int, int, str | None]] = []
    in_fence = False
    for index, line in enumerate(lines):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if match is None:
            continue
        headings.append((index, len(match.group("hashes")), _SECTION_ALIASES.get(_normalize_title(match.group("title")))))

    sections: dict[str, list[str]] = {}
    first_section_line = len(lines)
    open_end, open_level = -1, 0
    for position, (index, level, key) in enumerate(headings):
        # Entry sub-headings titled like a section ("### Progress") stay inside the open section.
        if index < open_end and level > open_level:
            continue
        if key is None or key in sections:
            continue
        first_section_line = min(first_section_line, index)
        end = len(lines)
        for later_index, later_level, _ in headings[position + 1:]:
            if later_level <= level:
                end = later_index
                break
        sections[key] = lines[index + 1:end]
        open_end, open_level = end, level
    return sections, lines[:first_section_line]


def _normalize_title(title: str) -> str:
    cleaned = re.sub(r"[*_`:]", "", title).strip().lower()
    cleaned = re.sub(r"^\d+[.)]\s*", "", cleaned)
    return " ".join(cleaned.split())


def _is_placeholder(text: str) -> bool:
    stripped = text.strip()
    return stripped.lower() in _EMPTY_VALUES or bool(_PLACEHOLDER_RE.match(stripped))


def _is_written_empty(text: str) -> bool:
    """True only for the empty markers the serializer itself writes."""

    stripped = text.strip()
    return not stripped or stripped in _WRITTEN_EMPTY or bool(_PLACEHOLDER_RE.match(stripped))


def _parse_goal(lines: list[str]) -> str:
    text = "\n".join(lines).strip()
    if _is_written_empty(text):
        return ""
    return _ESCAPED_HEADING_RE.sub(r"\1", text)


def _parse_criteria(lines: list[str]) -> tuple[AcceptanceCriterion, ...]:
    criteria: list[AcceptanceCriterion] = []
    base_indent: int | None = None
    for line in lines:
        if not line.strip() or _is_placeholder(line):
            continue
        checkbox = _CHECKBOX_RE.match(line)
        indent = len(line) - len(line.lstrip())
        if checkbox is not None and (base_indent is None or indent <= base_indent):
            base_indent = indent
            criteria.append(
                AcceptanceCriterion(
                    description=checkbox.group("text").strip(),
                    completed=_is_checked(checkbox.group("mark")),
                )
            )
            continue
        field = _KEY_VALUE_RE.match(line)
        if criteria and field is not None and _FIELD_ALIASES.get(_normalize_title(field.group("key"))) == "notes":
            last = criteria[-1]
            notes = field.group("value").strip()
            combined = f"{last.notes} {notes}" if last.notes else notes
            criteria[-1] = AcceptanceCriterion(last.description, last.completed, combined or None)
            continue
        bullet = _BULLET_RE.match(line)
        if bullet is not None and (base_indent is None or indent <= base_indent):
            base_indent = indent if base_indent is None else base_indent
            criteria.append(AcceptanceCriterion(description=bullet.group("text").strip()))
    return tuple(criteria)


def _is_checked(mark: str) -> bool:
    glyph = "".join(char for char in mark if char not in _VARIATION_SELECTORS).strip()
    return glyph in CHECKED_GLYPHS


# -----------------------------------------------------------------------------
# Entries (decisions and log)
# -----------------------------------------------------------------------------


def _split_entries(lines: list[str]) -> list[tuple[str, list[str]]]:
    """Split a section body on its sub-headings.

    Sections written without sub-headings fall back to one entry per top-level
    bullet, with the bullet text as the entry title.
    """

    entries: list[tuple[str, list[str]]] = []
    current: tuple[str, list[str]] | None = None
    for line in lines:
        heading = _HEADING_RE.match(line)
        if heading is not None:
            current = (heading.group("title").strip(), [])
            entries.append(current)
            continue
        if current is not None:
            current[1].append(line)
    if entries:
        return entries

    for line in lines:
        if not line.strip() or _is_placeholder(line):
            continue
        bullet = _BULLET_RE.match(line)
        if bullet is not None and not bullet.group("indent"):
            title, _, remainder = bullet.group("text").partition(":")
            if _FIELD_ALIASES.get(_normalize_title(title)) and entries:
                entries[-1][1].append(line)
                continue
            title = title.strip().strip("*")
            fields = [f"- Rationale: {remainder.strip()}"] if remainder.strip() else []
            entries.append((title, fields))
        elif entries:
            entries[-1][1].append(line)
    return entries


def _entry_fields(lines: list[str]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    current_list: list[str] | None = None
    for line in lines:
        if not line.strip():
            continue
        bullet = _BULLET_RE.match(line)
        if current_list is not None and bullet is not None and bullet.group("indent"):
            item = bullet.group("text").strip().strip("`")
            if item and not _is_written_empty(item):
                current_list.append(item)
            continue
        field = _KEY_VALUE_RE.match(line)
        name = _FIELD_ALIASES.get(_normalize_title(field.group("key"))) if field else None
        if field is not None and name is not None and name not in fields:
            value = field.group("value").strip()
            if name in {"alternatives", "tools"}:
                # Tool names are identifiers; alternatives are free text.
                items = _split_list(value, empty=_is_placeholder if name == "tools" else _is_written_empty)
                fields[name] = items
                current_list = items
            else:
                fields[name] = value
                current_list = None
    return fields


def _split_list(value: str, *, empty: Callable[[str], bool]) -> list[str]:
    if empty(value):
        return []
    parts = re.split(r"[,;]", value)
    return [part.strip().strip("`*") for part in parts if part.strip() and not empty(part)]


def _title_and_date(raw: str, *, dated: bool) -> tuple[str, datetime | None]:
    if dated:
        return raw.strip(), None
    trailing = _TRAILING_DATE_RE.match(raw)
    if trailing is not None and trailing.group("title").strip():
        return trailing.group("title").strip(), _parse_time(trailing.group("paren") or trailing.group("bare"))
    leading = _LEADING_DATE_RE.match(raw)
    if leading is not None and leading.group("title").strip():
        return leading.group("title").strip(), _parse_time(leading.group("date"))
    return raw.strip(), None


def _clean_title(title: str) -> str:
    stripped = title.strip().strip("*").strip()
    return "" if stripped.lower() == EMPTY_FIELD else stripped


def _field_text(fields: Mapping[str, Any], name: str) -> str:
    value = fields.get(name)
    if not isinstance(value, str) or _is_written_empty(value):
        return ""
    return value


def _parse_decisions(lines: list[str], moment: datetime) -> list[Decision]:
    decisions: list[Decision] = []
    for heading, body in _split_entries(lines):
        fields = _entry_fields(body)
        title, heading_date = _title_and_date(heading, dated="date" in fields)
        timestamp = _parse_time(fields.get("date")) or heading_date or moment
        decisions.append(
            Decision(
                title=_clean_title(title),
                rationale=_field_text(fields, "rationale"),
                alternatives=tuple(fields.get("alternatives", ())),
                timestamp=timestamp,
            )
        )
    return decisions


def _parse_log(lines: list[str], moment: datetime) -> list[ExecutionLogEntry]:
    entries: list[ExecutionLogEntry] = []
    for heading, body in _split_entries(lines):
        fields = _entry_fields(body)
        title, heading_date = _title_and_date(heading, dated="date" in fields)
        if not fields.get("result") and fields.get("rationale"):
            fields["result"] = fields["rationale"]
        timestamp = _parse_time(fields.get("date")) or heading_date or moment
        entries.append(
            ExecutionLogEntry(
                action=_clean_title(title),
                result=_field_text(fields, "result"),
                tools_used=tuple(fields.get("tools", ())),
                timestamp=timestamp,
            )
        )
    return entries


# -----------------------------------------------------------------------------
# Scalars
# -----------------------------------------------------------------------------


def _parse_time(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip().strip("`*\"'")
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in ("%Y-%m-%d %H:%M", "%Y/%m/%d %H:%M:%S", "%Y/%m/%d", "%d %b %Y"):
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        else:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_int(value: Any) -> int | None:
    if value is None:
        return None
    match = re.search(r"-?\d+", str(value))
    if match is None:
        return None
    number = int(match.group(0))
    return number if number >= 1 else None
