"""Lenient extraction of the decision list from free-text model completions.

A completion is expected to hold free-form reasoning followed, somewhere, by a
JSON array of decision objects. Extraction tries, in order:

1. a fenced block tagged ``json``;
2. the first other fenced block (its language tag skipped);
3. the whole completion, earliest ``[{`` candidate that decodes first, then a
   backward scan over every ``[``.

Candidates are bracket-matched and trial-decoded before being accepted. A span
that decodes as-is is used verbatim; only a span that fails to decode goes
through the repair grammar, which is closed:

* typographic double quotes (U+201C, U+201D) become ``"``;
* typographic single quotes (U+2018, U+2019) become ``'``;
* a comma followed only by whitespace before ``}`` or ``]`` is dropped,
  unless it sits inside a string literal.

Arrays whose first element is numeric or otherwise not an object are
reasoning artifacts and are rejected.

Usage::

    decisions = extract_decisions(completion)      # raises ExtractionError
    trace = extract_cot_trace(completion)
"""

from __future__ import annotations

import json
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from app.core.errors import ExtractionError
from schemas.decision import Decision

# ── Repair grammar ──────────────────────────────────────────────────────────────

_QUOTE_TRANSLATION = str.maketrans({
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
})

_WHITESPACE = " \t\r\n"
_FENCE = "```"
_JSON_FENCE = "```json"
_PREVIEW_CHARS = 500

_DECISION_LIST = TypeAdapter(list[Decision])


def normalize_quotes(text: str) -> str:
    """Replace typographic quotes with ASCII ones. Length-preserving."""
    return text.translate(_QUOTE_TRANSLATION)


def _next_non_whitespace(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in _WHITESPACE:
        idx += 1
    return idx


def _strip_trailing_commas(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    idx = 0
    while idx < len(text):
        ch = text[idx]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            idx += 1
            continue
        if ch == ",":
            after = _next_non_whitespace(text, idx + 1)
            if after < len(text) and text[after] in "}]":
                idx = after
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
        idx += 1
    return "".join(out)


def repair_json(span: str) -> str:
    """Apply the fixed repair grammar to an extracted span."""
    repaired = normalize_quotes(span)
    while True:
        stripped = _strip_trailing_commas(repaired)
        if stripped == repaired:
            return repaired
        repaired = stripped


def find_matching_bracket(text: str, start: int) -> int:
    """Index of the ``]`` closing the ``[`` at ``start``, or -1.

    Brackets inside JSON string literals are ignored.
    """
    if start >= len(text) or text[start] != "[":
        return -1

    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
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
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return idx
    return -1


def _decode(span: str) -> list[Decision]:
    return _DECISION_LIST.validate_python(json.loads(span))


def _decodes(span: str) -> bool:
    try:
        _decode(span.strip())
    except (ValueError, ValidationError):
        return False
    return True


def _decodable_span(text: str, quoted: str, pos: int) -> Optional[tuple[int, bool]]:
    """End of a decodable array opening at ``pos`` and whether it needs repair."""
    end = find_matching_bracket(text, pos)
    if end != -1 and _decodes(text[pos:end + 1]):
        return end, False
    end = find_matching_bracket(quoted, pos)
    if end != -1 and _decodes(repair_json(quoted[pos:end + 1])):
        return end, True
    return None


def _find_object_array(text: str) -> Optional[tuple[int, int]]:
    """Earliest ``[`` opening an array of objects that decodes, as (start, end)."""
    quoted = normalize_quotes(text)
    pos = quoted.find("[")
    while pos != -1:
        after = _next_non_whitespace(quoted, pos + 1)
        if after < len(quoted) and quoted[after] == "{":
            found = _decodable_span(text, quoted, pos)
            if found is not None:
                return pos, found[0]
        pos = quoted.find("[", pos + 1)
    return None


def _locate_array(text: str) -> Optional[tuple[int, int]]:
    found = _find_object_array(text)
    if found is not None:
        return found

    quoted = normalize_quotes(text)
    pos = quoted.rfind("[")
    while pos != -1:
        span = _decodable_span(text, quoted, pos)
        if span is not None:
            return pos, span[0]
        pos = quoted.rfind("[", 0, pos)
    return None


def find_json_array_start(text: str) -> int:
    """Locate the start of the decision array in ``text``.

    Prefers the earliest decodable array of objects, then scans backward from
    the end for any decodable array. Returns -1 when nothing decodes.
    """
    found = _locate_array(text)
    return found[0] if found is not None else -1


def extract_cot_trace(text: str) -> str:
    """Reasoning that precedes the decision array, or the whole text."""
    start = find_json_array_start(text)
    if start > 0:
        trace = text[:start].rstrip()
        if trace.endswith(_JSON_FENCE):
            trace = trace[: -len(_JSON_FENCE)]
        elif trace.endswith(_FENCE):
            trace = trace[: -len(_FENCE)]
        return trace.strip()
    return text.strip()


def _span_in_block(block: str) -> str:
    found = _find_object_array(block)
    if found is None:
        return ""
    start, end = found
    return block[start:end + 1].strip()


def _json_fenced_span(text: str) -> str:
    fence = text.find(_JSON_FENCE)
    if fence == -1:
        return ""
    content_start = _next_non_whitespace(text, fence + len(_JSON_FENCE))
    close = text.find(_FENCE, content_start)
    if close == -1:
        return ""
    return _span_in_block(text[content_start:close])


def _plain_fenced_span(text: str) -> str:
    fence = text.find(_FENCE)
    if fence == -1:
        return ""
    after = fence + len(_FENCE)
    line_end = text.find("\n", after)
    first_line = text[after:line_end if line_end != -1 else len(text)].strip()
    if first_line.lower() == "json":
        return ""
    if not first_line or first_line.startswith("["):
        content_start = after
    elif line_end == -1:
        return ""
    else:
        # rest of the fence line is a language tag
        content_start = line_end + 1
    close = text.find(_FENCE, content_start)
    if close == -1:
        return ""
    return _span_in_block(text[content_start:close])


def _preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def extract_decisions(text: str) -> list[Decision]:
    """Extract and decode the decision list from a completion.

    Raises:
        ExtractionError: when no decodable array of decision objects exists.
    """
    span = _json_fenced_span(text) or _plain_fenced_span(text)

    if not span:
        found = _locate_array(text)
        if found is None:
            lowered = text.lower()
            if "json" in lowered or _FENCE in text or "decision" in lowered:
                reason = "found JSON-related text but no valid JSON array"
            else:
                reason = "completion contains only reasoning with no decision array"
            raise ExtractionError(f"unable to find JSON array start: {reason}. Preview: {_preview(text)}")
        start, end = found
        span = text[start:end + 1].strip()

    content = span if _decodes(span) else repair_json(span)

    inner = content[1:-1].lstrip(_WHITESPACE) if len(content) > 2 else ""
    if inner:
        first = inner[0]
        if first.isdigit() or first in "-.":
            raise ExtractionError("found numeric array instead of decision array")
        if first != "{":
            raise ExtractionError(f"found array starting with {first!r} instead of '{{'. Content: {_preview(content, 200)}")

    try:
        return _decode(content)
    except ValueError as exc:
        raise ExtractionError(f"JSON parsing failed: {exc}. Content: {_preview(content)}") from exc


__all__ = [
    "normalize_quotes",
    "repair_json",
    "find_matching_bracket",
    "find_json_array_start",
    "extract_cot_trace",
    "extract_decisions",
]
