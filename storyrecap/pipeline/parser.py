"""Parsing of LLM summary output: prose sections plus catalog blocks."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from storyrecap.constants import (
    FENCED_BLOCK_RE,
    INCOMPLETE_BADGE,
    LABELED_FENCE_RE,
    MARKER_BLOCK_RE,
    PARSE_FAILED_BADGE,
    SECTION_HEADER_RE,
)
from storyrecap.models import Character, Item, StoryEvent

logger = logging.getLogger(__name__)

_BLOCK_PATTERNS = (FENCED_BLOCK_RE, LABELED_FENCE_RE, MARKER_BLOCK_RE)

_EMPTY_VALUES = {"", "n/a", "na", "none", "unknown", "-", "불명", "不明"}

_KEY_ALIASES = {
    "relationship": "relationshipWithUser",
    "relationship_with_user": "relationshipWithUser",
    "relationshipwithuser": "relationshipWithUser",
    "first_appearance": "firstAppearance",
    "firstappearance": "firstAppearance",
    "message_index": "messageIndex",
    "messageindex": "messageIndex",
    "message_number": "messageIndex",
    "messagenumber": "messageIndex",
    "appearance": "description",
    "personality": "traits",
    "created_at": "createdAt",
}

_PIPE_COLUMNS = {
    "CHARACTERS": (
        "name", "role", "age", "occupation", "description", "traits",
        "relationshipWithUser", "firstAppearance",
    ),
    "EVENTS": ("title", "description", "participants", "importance", "messageIndex"),
    "ITEMS": ("name", "description", "owner", "origin", "status", "messageIndex"),
}


@dataclass
class ParsedOutput:
    """Result of parsing one LLM response."""

    body_text: str
    characters: list[Character] = field(default_factory=list)
    events: list[StoryEvent] = field(default_factory=list)
    items: list[Item] = field(default_factory=list)
    was_parsing_incomplete: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class Section:
    """A headed section of a summary body."""

    start: int
    end: int
    text: str


def strip_json_fences(text: str) -> str:
    """Strip markdown code fences (```json ... ```) around a payload."""
    text = text.strip()
    text = re.sub(r"^`{3,}(?:json)?\s*\n?", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\n?`{3,}\s*$", "", text)
    return text.strip()


def _find_blocks(text: str) -> list[tuple[int, int, str, str]]:
    """Non-overlapping (start, end, LABEL, inner) catalog blocks."""
    found: list[tuple[int, int, str, str]] = []
    for pattern in _BLOCK_PATTERNS:
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(start < e and s < end for s, e, _, _ in found):
                continue
            found.append((start, end, match.group(1).upper(), match.group(2)))
    found.sort()
    return found


def strip_catalog_blocks(text: str) -> str:
    """Remove every catalog block, leaving the prose."""
    blocks = _find_blocks(text)
    if not blocks:
        return text.strip()
    pieces: list[str] = []
    cursor = 0
    for start, end, _, _ in blocks:
        pieces.append(text[cursor:start])
        cursor = end
    pieces.append(text[cursor:])
    cleaned = "".join(pieces)
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


def _close_brackets(text: str) -> str:
    """Append closers for any bracket or string left open."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            stack.append("]" if ch == "[" else "}")
        elif ch in "]}" and stack and stack[-1] == ch:
            stack.pop()
    tail = '"' if in_string else ""
    return text + tail + "".join(reversed(stack))


def loads_lenient(text: str) -> Optional[Any]:
    """json.loads with one permissive repair pass; None when hopeless."""
    try:
        return json.loads(text)
    except ValueError:
        pass

    repaired = re.sub(r",\s*([\]}])", r"\1", text.strip())
    repaired = re.sub(r",\s*$", "", repaired)
    repaired = _close_brackets(repaired)
    repaired = re.sub(r",\s*([\]}])", r"\1", repaired)
    try:
        return json.loads(repaired)
    except ValueError:
        pass

    decoder = json.JSONDecoder()
    for candidate in (text, repaired):
        start = candidate.find("[")
        while start != -1:
            try:
                value, _ = decoder.raw_decode(candidate, start)
                return value
            except ValueError:
                start = candidate.find("[", start + 1)
    return None


def _normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = _KEY_ALIASES.get(str(key).lower(), key)
        if isinstance(value, str) and value.strip().lower() in _EMPTY_VALUES:
            value = ""
        data.setdefault(canonical, value)
    return data


def _as_records(label: str, data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict):
        nested = data.get(label.lower())
        if isinstance(nested, list):
            return [r for r in nested if isinstance(r, dict)]
        if label == "CHARACTERS" and data and all(isinstance(v, dict) for v in data.values()):
            return [{"name": name, **values} for name, values in data.items()]
        return [data]
    return []


def _pipe_records(label: str, text: str) -> list[dict[str, Any]]:
    columns = _PIPE_COLUMNS[label]
    records: list[dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip().strip("|").strip()
        if not line or "|" not in line:
            continue
        cells = [c.strip() for c in line.split("|")]
        if cells[0].lower() in ("charactername", "eventtitle", "itemname", "name", "title"):
            continue  # header row echoed back
        records.append(dict(zip(columns, cells)))
    return records


def _parse_block(label: str, inner: str) -> tuple[list[dict[str, Any]], bool]:
    """Records in a block and whether the block could be read."""
    payload = strip_json_fences(inner)
    if not payload:
        return [], True
    if payload[0] in "[{":
        data = loads_lenient(payload)
        if data is None:
            return [], False
        return _as_records(label, data), True
    if "|" in payload:
        return _pipe_records(label, payload), True
    data = loads_lenient(payload)
    if data is None:
        return [], False
    return _as_records(label, data), True


def _build(label: str, raw: dict[str, Any]) -> Optional[Any]:
    data = _normalize_keys(raw)
    try:
        if label == "CHARACTERS":
            if not str(data.get("name") or "").strip():
                return None
            return Character.from_dict(data)
        if label == "EVENTS":
            if not str(data.get("title") or "").strip():
                return None
            return StoryEvent.from_dict(data)
        if not str(data.get("name") or "").strip():
            return None
        return Item.from_dict(data)
    except (TypeError, ValueError, KeyError):
        logger.debug("Dropping malformed %s record: %r", label, raw)
        return None


def parse_response(raw: str) -> ParsedOutput:
    """Split an LLM response into clean prose and catalog records."""
    text = (raw or "").replace("\r\n", "\n")
    result = ParsedOutput(body_text="")
    failed_labels: list[str] = []

    for _, _, label, inner in _find_blocks(text):
        records, ok = _parse_block(label, inner)
        if not ok:
            failed_labels.append(label)
            continue
        for record in records:
            built = _build(label, record)
            if built is None:
                continue
            if label == "CHARACTERS":
                result.characters.append(built)
            elif label == "EVENTS":
                result.events.append(built)
            else:
                result.items.append(built)

    body = strip_catalog_blocks(text)
    if not body or PARSE_FAILED_BADGE in body:
        result.was_parsing_incomplete = True
        result.warnings.append("response has no usable summary body")
        result.body_text = f"{PARSE_FAILED_BADGE}\n{text.strip()}".strip()
        return result

    if failed_labels:
        result.was_parsing_incomplete = True
        result.warnings.extend(f"unreadable {label}_JSON block" for label in failed_labels)
        logger.warning("Could not parse catalog blocks: %s", ", ".join(failed_labels))
        body = f"{INCOMPLETE_BADGE}\n{body}"
    result.body_text = body
    return result


def split_sections(body: str) -> list[Section]:
    """Headed sections (#N, #A-B, #A~B, [#A-B], **#N**) in order."""
    matches = list(SECTION_HEADER_RE.finditer(body))
    sections: list[Section] = []
    for i, match in enumerate(matches):
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) is not None else start
        if end < start:
            start, end = end, start
        text_end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        sections.append(Section(start, end, body[match.end():text_end].strip()))
    return sections


def map_individual(body: str, indices: list[int]) -> dict[int, str]:
    """Assign per-message section texts to the requested indices."""
    sections = split_sections(body)
    wanted = set(indices)
    result: dict[int, str] = {}
    for section in sections:
        if section.start == section.end and section.start in wanted:
            if section.text and section.start not in result:
                result[section.start] = section.text
    if result:
        return result

    if sections and len(sections) == len(indices):
        # Headers present but numbered differently (e.g. 1-based): map by order
        logger.debug("Mapping %d sections to messages by order", len(sections))
        return {idx: s.text for idx, s in zip(indices, sections) if s.text}
    if not sections and len(indices) == 1 and body.strip():
        return {indices[0]: body.strip()}
    return result


def map_groups(body: str, ranges: list[tuple[int, int]]) -> dict[tuple[int, int], str]:
    """Assign group section texts to the requested ranges."""
    sections = split_sections(body)
    wanted = set(ranges)
    result: dict[tuple[int, int], str] = {}
    for section in sections:
        key = (section.start, section.end)
        if key in wanted and section.text and key not in result:
            result[key] = section.text
    if result or len(ranges) != 1:
        return result

    # A single group may come back without (or with a wrong) header
    if len(sections) == 1 and sections[0].text:
        return {ranges[0]: sections[0].text}
    if not sections and body.strip():
        return {ranges[0]: body.strip()}
    return result


def is_incomplete_summary(text: str) -> bool:
    """Heuristic for output cut off mid-generation."""
    stripped = (text or "").strip()
    if len(stripped) < 15:
        return True
    if stripped.count('"') % 2 == 1:
        return True
    for opener, closer in (("(", ")"), ("[", "]"), ("{", "}")):
        if stripped.count(opener) > stripped.count(closer):
            return True
    return False
