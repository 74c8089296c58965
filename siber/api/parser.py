"""Tool-call parser for the labeled-block text protocol.

Models reply in free text. A reply may contain any number of blocks like::

    THINKING: I need to see what is in the project root.
    ACTION: list_directory
    PARAMETERS: {"dir_path": "."}
    MESSAGE: Listing the project root.

The scanner works line by line. A line whose first non-blank text is one
of the labels THINKING/ACTION/PARAMETERS/MESSAGE followed by ':' opens a
segment; the segment's body runs until the next label line or end of
text. PARAMETERS and MESSAGE may also follow ACTION on the same line,
and MESSAGE may follow the closing brace of PARAMETERS. Segments are
grouped into blocks: THINKING always opens a new block, and ACTION opens
one when the current block already has an action. Only the first
PARAMETERS and MESSAGE of a block are used.

A block becomes a ToolCall only when it has both an ACTION (a bare
identifier) and a PARAMETERS object. PARAMETERS text goes through a
small normalization grammar before json.loads (see _normalize_json).
A block whose parameters still fail to decode is logged and skipped;
its siblings are unaffected. Only non-str input raises.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from siber.api.models import ToolCall

logger = logging.getLogger(__name__)

LABELS = ("THINKING", "ACTION", "PARAMETERS", "MESSAGE")

_LABEL_LINE = re.compile(r"^[ \t]*(THINKING|ACTION|PARAMETERS|MESSAGE)[ \t]*:", re.MULTILINE)
_INLINE_LABEL = re.compile(r"(?<!\w)(PARAMETERS|MESSAGE)[ \t]*:")
_INLINE_MESSAGE = re.compile(r"(?<!\w)MESSAGE[ \t]*:")
_IDENTIFIER = re.compile(r"\w+")
_FENCE_LANGUAGE = re.compile(r"[A-Za-z][\w+-]*")

_VALID_ESCAPES = set('"\\/bfnrtu')
_CLOSERS = set(",}]:")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


class ToolCallParseError(ValueError):
    """A PARAMETERS block could not be recovered into a JSON object."""

    def __init__(self, message: str, raw_block: str) -> None:
        super().__init__(message)
        self.raw_block = raw_block


ParseErrorCallback = Callable[[ToolCallParseError], None]


@dataclass
class _Block:
    start: int
    segments: dict[str, str] = field(default_factory=dict)
    raw: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_tool_calls(
    text: str, on_error: ParseErrorCallback | None = None
) -> list[ToolCall]:
    """Extract tool calls from a model reply, in source order.

    An empty list means the reply is a final answer.
    """
    if not isinstance(text, str):
        raise TypeError(f"parse_tool_calls expects str, got {type(text).__name__}")

    calls: list[ToolCall] = []
    for block in _scan_blocks(text):
        call = _build_call(block, on_error)
        if call is not None:
            calls.append(call)
    return calls


def has_tool_calls(text: str) -> bool:
    return bool(parse_tool_calls(text))


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


def _scan_segments(text: str) -> list[tuple[str, str, str]]:
    """Split text into (label, body, raw_segment) triples.

    Text before the first label line is prose and is ignored.
    """
    matches = list(_LABEL_LINE.finditer(text))
    segments = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        body = text[match.end():end]
        segments.extend(_split_inline(match.group(1), body, text[match.start():end]))
    return segments


def _split_inline(label: str, body: str, raw: str) -> list[tuple[str, str, str]]:
    """Split off PARAMETERS/MESSAGE labels that share a line with ACTION.

    Inside an ACTION segment either label may start mid-line. Inside a
    PARAMETERS segment only MESSAGE is looked for, and only after the
    JSON object closes. THINKING and MESSAGE bodies are prose and are
    never split.
    """
    if label == "ACTION":
        match = _INLINE_LABEL.search(body)
    elif label == "PARAMETERS":
        span = _object_span(body)
        match = _INLINE_MESSAGE.search(body, span[1]) if span else None
    else:
        match = None
    if match is None:
        return [(label, body, raw)]

    offset = len(raw) - len(body)
    inner_label = match.group(1) if match.re is _INLINE_LABEL else "MESSAGE"
    head = (label, body[:match.start()], raw[:offset + match.start()])
    return [head, *_split_inline(inner_label, body[match.end():], raw[offset + match.start():])]


def _scan_blocks(text: str) -> list[_Block]:
    blocks: list[_Block] = []
    current: _Block | None = None
    for index, (label, body, raw) in enumerate(_scan_segments(text)):
        opens_block = (
            current is None
            or label == "THINKING"
            or (label == "ACTION" and "ACTION" in current.segments)
        )
        if opens_block:
            current = _Block(start=index)
            blocks.append(current)
        # First occurrence of a label within a block wins
        current.segments.setdefault(label, body)
        current.raw.append(raw)
    return blocks


def _build_call(block: _Block, on_error: ParseErrorCallback | None) -> ToolCall | None:
    action_text = block.segments.get("ACTION")
    params_text = block.segments.get("PARAMETERS")
    if action_text is None or params_text is None:
        return None

    raw_block = "".join(block.raw).strip()
    action_match = _IDENTIFIER.match(action_text.strip())
    if not action_match:
        _report(ToolCallParseError("ACTION is not an identifier", raw_block), on_error)
        return None

    raw_params = _extract_object(params_text)
    if raw_params is None:
        _report(ToolCallParseError("PARAMETERS has no JSON object", raw_block), on_error)
        return None

    try:
        parameters = _decode_parameters(raw_params)
    except ValueError as e:
        _report(ToolCallParseError(f"Invalid PARAMETERS JSON: {e}", raw_block), on_error)
        return None

    return ToolCall(
        action=action_match.group(0),
        parameters=parameters,
        thinking=block.segments.get("THINKING", "").strip(),
        message=block.segments.get("MESSAGE", "").strip(),
        raw_parameters=raw_params,
    )


def _report(error: ToolCallParseError, on_error: ParseErrorCallback | None) -> None:
    logger.warning("Skipping tool call block: %s\n%s", error, error.raw_block)
    if on_error is not None:
        on_error(error)


# ---------------------------------------------------------------------------
# PARAMETERS recovery
# ---------------------------------------------------------------------------


def _extract_object(body: str) -> str | None:
    """Return the text from the first '{' to its balancing '}'.

    If the object never closes, everything from '{' to the end is
    returned and left for the decoder to reject.
    """
    span = _object_span(body)
    if span is None:
        return None
    return body[span[0]:span[1]].rstrip()


def _object_span(body: str) -> tuple[int, int] | None:
    """(start, end) of the first balanced object; end is len(body) if unclosed.

    Quoted and backtick-delimited spans are skipped while counting.
    """
    start = body.find("{")
    if start < 0:
        return None

    depth = 0
    i = start
    n = len(body)
    while i < n:
        ch = body[i]
        if ch == '"':
            i = _skip_double_quoted(body, i)
            continue
        if ch == "`":
            i = _skip_backticks(body, i)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return start, i + 1
        i += 1
    return start, n


def _skip_double_quoted(text: str, i: int) -> int:
    i += 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == '"' and _is_closing_quote(text, i):
            return i + 1
        i += 1
    return i


def _skip_backticks(text: str, i: int) -> int:
    fence = _fence_at(text, i)
    close = text.find(fence, i + len(fence))
    return len(text) if close < 0 else close + len(fence)


def _fence_at(text: str, i: int) -> str:
    j = i
    while j < len(text) and text[j] == "`":
        j += 1
    return text[i:j]


def _is_closing_quote(text: str, i: int) -> bool:
    j = i + 1
    while j < len(text) and text[j] in " \t\r\n":
        j += 1
    return j >= len(text) or text[j] in _CLOSERS


def _decode_parameters(raw: str) -> dict:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = json.loads(_normalize_json(raw))
    if not isinstance(value, dict):
        raise ValueError(f"expected an object, got {type(value).__name__}")
    return value


def _normalize_json(raw: str) -> str:
    """Rewrite near-JSON into JSON using a fixed set of rules.

    Outside strings:
      - a backtick-delimited value (`x` or ```x```) becomes a JSON string
      - a comma directly before '}' or ']' is dropped
    Inside double-quoted strings:
      - raw control characters are escaped
      - a backslash that does not start a valid escape is doubled
      - a '"' is the closing quote only when the next non-blank character
        is one of , } ] : or end of text; any other '"' is escaped
    Nothing else is touched, so nested or mismatched delimiters can still
    fail to decode. Those blocks are dropped by the caller.
    """
    out: list[str] = []
    i = 0
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == '"':
            i = _copy_string(raw, i, out)
            continue
        if ch == "`":
            fence = _fence_at(raw, i)
            close = raw.find(fence, i + len(fence))
            if close < 0:
                out.append(raw[i:])
                break
            value = raw[i + len(fence):close]
            if len(fence) >= 3:
                value = _strip_fence_language(value)
            out.append(json.dumps(value))
            i = close + len(fence)
            continue
        if ch == ",":
            j = i + 1
            while j < n and raw[j] in " \t\r\n":
                j += 1
            if j < n and raw[j] in "}]":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def _copy_string(raw: str, i: int, out: list[str]) -> int:
    out.append('"')
    i += 1
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == "\\":
            nxt = raw[i + 1] if i + 1 < n else ""
            if nxt == "u" and _is_hex4(raw[i + 2:i + 6]):
                out.append(raw[i:i + 6])
                i += 6
            elif nxt in _VALID_ESCAPES and nxt != "u":
                out.append(ch + nxt)
                i += 2
            else:
                out.append("\\\\")
                i += 1
            continue
        if ch == '"':
            if _is_closing_quote(raw, i):
                out.append('"')
                return i + 1
            out.append('\\"')
            i += 1
            continue
        if ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
        i += 1
    return i


def _is_hex4(s: str) -> bool:
    return len(s) == 4 and all(c in "0123456789abcdefABCDEF" for c in s)


def _strip_fence_language(value: str) -> str:
    # ```python\nprint(1)\n``` keeps only the code
    first, sep, rest = value.partition("\n")
    if sep and (not first.strip() or _FENCE_LANGUAGE.fullmatch(first.strip())):
        value = rest
    if value.endswith("\n"):
        value = value[:-1]
    return value
