"""
Recovery of structured data from LLM output.

Model output that should hold one JSON value routinely arrives wrapped in
markdown fences, surrounded by commentary, with trailing commas, or cut off
by the output limit. The functions here undo those defects with a small
scanner (depth stack, in-string flag, escape flag) and only ever parse the
recovered text as data.

Recovery order:
1. Strip markdown code fences and try a strict parse
2. Anchor on the first complete top-level value and try again
3. Repair the anchored span (trailing commas, open string, dangling
   property, unbalanced brackets) and try again
4. Salvage self-contained objects from the text
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import structlog

from .types import AIError, ErrorKind

logger = structlog.get_logger(__name__)

_CLOSERS = {"{": "}", "[": "]"}
_WHITESPACE = " \t\r\n"
_SNIPPET_LENGTH = 500
_MISSING = object()


@dataclass
class ParseResult:
    """Outcome of recovering one LLM response."""
    success: bool
    value: Any = None
    error: Optional[AIError] = None
    repairs: List[str] = field(default_factory=list)
    salvaged: bool = False


@dataclass
class _ScanState:
    """Scanner state after consuming a prefix of the text.

    ``stack`` holds the closers still owed, innermost last. ``expecting``
    runs parallel to it and records what the container expects next:
    ``key``, ``colon``, ``value`` or ``comma``.
    """
    stack: List[str] = field(default_factory=list)
    expecting: List[str] = field(default_factory=list)
    in_string: bool = False
    escape: bool = False
    token_start: Optional[int] = None
    token_is_key: bool = False
    end: Optional[int] = None


def _consume_slot(state: _ScanState) -> None:
    if not state.expecting:
        return
    if state.expecting[-1] == "key":
        state.expecting[-1] = "colon"
    else:
        state.expecting[-1] = "comma"


def _scan(text: str, start: int = 0, stop_at_value_end: bool = False) -> _ScanState:
    """Walk ``text`` from ``start`` tracking nesting outside string literals.

    With ``stop_at_value_end`` the scan stops once the value opened at
    ``start`` is closed and ``end`` points just past it.
    """
    state = _ScanState()
    for i in range(start, len(text)):
        ch = text[i]

        if state.in_string:
            if state.escape:
                state.escape = False
            elif ch == "\\":
                state.escape = True
            elif ch == '"':
                state.in_string = False
                _consume_slot(state)
            continue

        if ch in _WHITESPACE:
            continue

        if ch == '"':
            state.token_start = None
            state.in_string = True
        elif ch in _CLOSERS:
            state.token_start = None
            _consume_slot(state)
            state.stack.append(_CLOSERS[ch])
            state.expecting.append("key" if ch == "{" else "value")
        elif ch in "}]":
            state.token_start = None
            if state.stack:
                state.stack.pop()
                state.expecting.pop()
            if stop_at_value_end and not state.stack:
                state.end = i + 1
                return state
        elif ch == ":":
            state.token_start = None
            if state.expecting:
                state.expecting[-1] = "value"
        elif ch == ",":
            state.token_start = None
            if state.expecting:
                state.expecting[-1] = "key" if state.stack[-1] == "}" else "value"
        elif state.token_start is None:
            # Bare literal: number, true, false, null or garbage
            state.token_start = i
            state.token_is_key = bool(state.expecting) and state.expecting[-1] == "key"
            _consume_slot(state)

    return state


def strip_code_fences(text: str) -> str:
    """Remove a leading ```lang fence and a trailing ``` fence."""
    body = text.strip()
    if body.endswith("```"):
        body = body[:-3].rstrip()
    if body.startswith("```"):
        body = body[3:]
        tag_end = 0
        while tag_end < len(body) and (body[tag_end].isalnum() or body[tag_end] in "_+-"):
            tag_end += 1
        if tag_end < len(body) and (body[tag_end].isspace() or body[tag_end] in _CLOSERS):
            body = body[tag_end:]
    return body.strip()


def anchor_first_value(text: str) -> Optional[str]:
    """Return the first top-level JSON object or array in ``text``.

    Prose before and after the value is discarded. When the value is never
    closed (truncated output) the rest of the text is returned.
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    state = _scan(text, start, stop_at_value_end=True)
    if state.end is not None:
        return text[start:state.end]
    return text[start:]


def _strip_trailing_commas(text: str) -> str:
    out = []
    in_string = False
    escape = False
    length = len(text)
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < length and text[j] in _WHITESPACE:
                j += 1
            if j == length or text[j] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def _is_literal(token: str) -> bool:
    try:
        value = json.loads(token)
    except (ValueError, RecursionError):
        return False
    return value is None or isinstance(value, (bool, int, float))


def _complete_trailing_value(text: str, state: _ScanState) -> Tuple[str, bool]:
    if state.token_start is not None:
        if state.token_is_key:
            return text[:state.token_start].rstrip(), True
        if not _is_literal(text[state.token_start:].rstrip()):
            return text[:state.token_start] + "null", True
        return text, False

    if state.stack and state.stack[-1] == "}":
        if state.expecting[-1] == "colon":
            return text.rstrip() + ": null", True
        if state.expecting[-1] == "value":
            return text.rstrip() + " null", True
    return text, False


def repair_json(span: str) -> Tuple[str, List[str]]:
    """Apply the defect repairs to an anchored span.

    Returns the repaired text and the names of the repairs applied.
    """
    repairs = []

    text = _strip_trailing_commas(span)
    if text != span:
        repairs.append("trailing_commas")

    state = _scan(text)
    if state.in_string:
        if state.escape:
            text = text[:-1]
        text += '"'
        repairs.append("closed_string")
        state = _scan(text)

    text, changed = _complete_trailing_value(text, state)
    if changed:
        repairs.append("null_trailing_value")
        text = _strip_trailing_commas(text)
        state = _scan(text)

    if state.stack:
        text += "".join(reversed(state.stack))
        repairs.append("closed_brackets")

    return text, repairs


def missing_fields(value: Any, required_fields: Sequence[str]) -> List[str]:
    """List required fields that are absent or empty in ``value``."""
    if not isinstance(value, dict):
        return list(required_fields)
    return [
        name for name in required_fields
        if value.get(name) is None or value.get(name) in ("", [], {})
    ]


def salvage_fragments(text: str, required_fields: Sequence[str] = ()) -> List[dict]:
    """Parse every non-nested ``{...}`` substring that is valid on its own.

    Only non-empty objects carrying every required field are kept.
    """
    fragments = []
    start = None
    in_string = False
    escape = False

    for i, ch in enumerate(text):
        if start is None:
            if ch == "{":
                start = i
            continue

        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            start = i
        elif ch == "}":
            candidate = text[start:i + 1]
            start = None
            value = _loads(candidate)
            if isinstance(value, dict) and value and not missing_fields(value, required_fields):
                fragments.append(value)

    return fragments


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _MISSING


def _snippet(text: str) -> str:
    if len(text) > _SNIPPET_LENGTH:
        return text[:_SNIPPET_LENGTH] + "..."
    return text


def parse_ai_response(
    text: Optional[str],
    required_fields: Sequence[str] = (),
    allow_collection: bool = False,
) -> ParseResult:
    """Recover one structured value from raw model output.

    Never raises for any input string.

    Args:
        text: Raw model output
        required_fields: Fields a salvaged fragment must carry
        allow_collection: Return salvaged fragments as a list instead of
            failing when the text cannot be repaired

    Returns:
        ParseResult with ``value`` on success or ``error`` on failure
    """
    if not text or not text.strip():
        return ParseResult(
            success=False,
            error=AIError(ErrorKind.EMPTY_RESPONSE, "AI returned empty response"),
        )

    repairs = []
    body = strip_code_fences(text)
    if body != text.strip():
        repairs.append("stripped_fences")

    parsed = _loads(body)
    if parsed is not _MISSING:
        return ParseResult(success=True, value=parsed, repairs=repairs)

    span = anchor_first_value(body)
    if span is not None:
        if span != body:
            repairs.append("anchored_value")
        parsed = _loads(span)
        if parsed is _MISSING:
            repaired, applied = repair_json(span)
            repairs.extend(applied)
            parsed = _loads(repaired)
        if parsed is not _MISSING:
            return ParseResult(success=True, value=parsed, repairs=repairs)

    fragments = salvage_fragments(body, required_fields)
    repairs.append("salvage")
    logger.info(
        "ai_response_salvage",
        fragments=len(fragments),
        allow_collection=allow_collection,
    )

    if allow_collection:
        return ParseResult(success=True, value=fragments, repairs=repairs, salvaged=True)

    return ParseResult(
        success=False,
        error=AIError(
            ErrorKind.PARSING_ERROR,
            "Failed to parse AI response as JSON after repair and salvage",
            raw_snippet=_snippet(text),
            details={"repairs": list(repairs), "salvaged_fragments": len(fragments)},
        ),
        repairs=repairs,
    )
