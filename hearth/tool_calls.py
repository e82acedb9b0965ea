"""Recover tool calls from free-form model output.

Models running locally rarely produce clean structured output. The parser
tries a fixed sequence of extraction strategies and stops at the first one
that yields at least one well-formed call:

1. ``<tool_call>...</tool_call>`` tagged blocks
2. fenced code blocks holding JSON
3. a brace-balanced scan over the whole text (tolerates unquoted keys,
   trailing commas, comments, single quotes and Python literals)
4. line-by-line accumulation, which also closes objects cut off by the
   end of the output

Two call shapes are understood::

    {"tool_name": "file", "tool_args": {...}, "thoughts": [...]}
    {"name": "file", "arguments": {...}}      # or "args" / "parameters"

Anything else becomes an implicit ``response`` call carrying the text, so
the result is never empty and parsing never raises.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from hearth.logging import get_logger
from hearth.tools.registry import ToolResult

log = get_logger(__name__)

RESPONSE_TOOL = "response"

_THINK_BLOCK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL | re.IGNORECASE)
_TAGGED_RE = re.compile(r"<tool_call>\s*(.*?)\s*(?:</tool_call>|\Z)", re.DOTALL | re.IGNORECASE)
_FENCED_RE = re.compile(r"```(?:[A-Za-z0-9_+-]+)?[ \t]*\n?(.*?)```", re.DOTALL)
_TOOL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]{0,63}$")

_BARE_DOUBLE_QUOTE_RE = re.compile(r'(?<!\\)"')
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_PY_LITERALS = (
    (re.compile(r"\bTrue\b"), "true"),
    (re.compile(r"\bFalse\b"), "false"),
    (re.compile(r"\bNone\b"), "null"),
)

_ARGUMENT_KEYS = ("arguments", "args", "parameters", "input")
_THOUGHT_KEYS = ("thoughts", "thought", "reasoning", "headline")
_REPLY_KEYS = ("text", "content", "response", "answer", "message")


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:8]}"


@dataclass
class ToolCall:
    """One structured tool invocation recovered from model text."""

    name: str
    arguments: dict[str, str] = field(default_factory=dict)
    thoughts: list[str] = field(default_factory=list)
    raw_id: str = field(default_factory=_new_call_id)
    confidence: float | None = None
    implicit: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.raw_id,
            "name": self.name,
            "arguments": dict(self.arguments),
            "thoughts": list(self.thoughts),
        }


def stringify_argument(value: Any) -> str:
    """Flatten a decoded JSON value into the string form tools receive."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list) and all(isinstance(item, (str, int, float, bool)) for item in value):
        return ", ".join(stringify_argument(item) for item in value)
    return json.dumps(value, ensure_ascii=False)


def _string_end(text: str, start: int) -> int:
    """Index just past the string literal opening at `start` (or len(text))."""
    quote = text[start]
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == quote:
            return index + 1
    return len(text)


def _requote(literal: str) -> str:
    closed = len(literal) > 1 and literal.endswith("'")
    inner = literal[1:-1] if closed else literal[1:]
    inner = inner.replace("\\'", "'")
    inner = _BARE_DOUBLE_QUOTE_RE.sub(r'\\"', inner)
    return f'"{inner}"'


def _repair_code(chunk: str) -> str:
    for pattern, replacement in _PY_LITERALS:
        chunk = pattern.sub(replacement, chunk)
    chunk = _UNQUOTED_KEY_RE.sub(r'\1"\2"\3', chunk)
    return _TRAILING_COMMA_RE.sub(r"\1", chunk)


def clean_dirty_json(text: str) -> str:
    """Best-effort repair of almost-JSON emitted by small models.

    Only text outside string literals is rewritten, so argument values
    reach the tool exactly as the model wrote them.
    """
    pieces: list[str] = []
    code: list[str] = []

    def flush() -> None:
        if code:
            pieces.append(_repair_code("".join(code)))
            code.clear()

    # Last non-space character kept; a single quote opens a string only
    # where a key or value may begin.
    previous = ""
    index = 0
    while index < len(text):
        char = text[index]
        if char == '"' or (char == "'" and previous in {"", "{", "[", ",", ":"}):
            end = _string_end(text, index)
            flush()
            literal = text[index:end]
            pieces.append(literal if char == '"' else _requote(literal))
            previous = '"'
            index = end
        elif text.startswith("/*", index):
            close = text.find("*/", index + 2)
            index = len(text) if close < 0 else close + 2
        elif text.startswith("//", index) and (index == 0 or text[index - 1] in " \t\r\n,{["):
            close = text.find("\n", index)
            index = len(text) if close < 0 else close
        else:
            code.append(char)
            if not char.isspace():
                previous = char
            index += 1
    flush()
    return "".join(pieces)


def decode_json_lenient(text: str) -> Any | None:
    """Decode strict JSON, falling back to the dirty-JSON repair."""
    candidate = (text or "").strip()
    if not candidate:
        return None
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    try:
        return json.loads(clean_dirty_json(candidate))
    except ValueError:
        return None


def _coerce_arguments(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        decoded = decode_json_lenient(raw) if raw.strip().startswith("{") else None
        if isinstance(decoded, dict):
            raw = decoded
        else:
            return {"input": raw} if raw.strip() else {}
    if isinstance(raw, dict):
        return {str(key): stringify_argument(value) for key, value in raw.items()}
    return {"input": stringify_argument(raw)}


def _collect_thoughts(obj: dict[str, Any]) -> list[str]:
    thoughts: list[str] = []
    for key in _THOUGHT_KEYS:
        value = obj.get(key)
        if isinstance(value, list):
            thoughts.extend(str(item).strip() for item in value if str(item).strip())
        elif isinstance(value, str) and value.strip():
            thoughts.append(value.strip())
    return thoughts


def _coerce_confidence(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if 0.0 <= number <= 1.0 else None


def normalize_call(obj: Any) -> ToolCall | None:
    """Map either supported call shape onto a ToolCall; None if neither fits."""
    if not isinstance(obj, dict):
        return None

    name: Any = None
    raw_args: Any = None
    if "tool_name" in obj:
        name = obj.get("tool_name")
        raw_args = obj.get("tool_args", obj.get("arguments"))
    elif isinstance(obj.get("function"), dict):
        function = obj["function"]
        name = function.get("name")
        raw_args = function.get("arguments", function.get("parameters"))
    else:
        arg_key = next((key for key in _ARGUMENT_KEYS if key in obj), None)
        for key in ("name", "tool", "action", "function"):
            if isinstance(obj.get(key), str) and (arg_key is not None or key in {"tool", "function"}):
                name = obj[key]
                break
        raw_args = obj.get(arg_key) if arg_key else None

    if not isinstance(name, str) or not _TOOL_NAME_RE.match(name.strip()):
        return None

    raw_id = obj.get("id")
    return ToolCall(
        name=name.strip(),
        arguments=_coerce_arguments(raw_args),
        thoughts=_collect_thoughts(obj),
        raw_id=raw_id if isinstance(raw_id, str) and raw_id.strip() else _new_call_id(),
        confidence=_coerce_confidence(obj.get("confidence")),
    )


def _calls_from_payload(payload: Any) -> list[ToolCall]:
    items = payload if isinstance(payload, list) else [payload]
    return [call for call in (normalize_call(item) for item in items) if call is not None]


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCED_RE.fullmatch(stripped)
    return match.group(1).strip() if match else stripped


def _from_tagged(text: str) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for match in _TAGGED_RE.finditer(text):
        body = _strip_fences(match.group(1))
        decoded = decode_json_lenient(body)
        if decoded is None:
            spans = _balanced_spans(body)
            decoded = decode_json_lenient(body[spans[0][0]:spans[0][1]]) if spans else None
        calls.extend(_calls_from_payload(decoded))
    return calls


def _from_fenced(text: str) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for match in _FENCED_RE.finditer(text):
        body = match.group(1).strip()
        if body.startswith(("{", "[")):
            calls.extend(_calls_from_payload(decode_json_lenient(body)))
    return calls


def _balanced_spans(text: str) -> list[tuple[int, int]]:
    """Top-level `{...}` spans, skipping braces inside double-quoted strings."""
    spans: list[tuple[int, int]] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append((start, index + 1))
    return spans


def _from_balanced(text: str) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for start, end in _balanced_spans(text):
        call = normalize_call(decode_json_lenient(text[start:end]))
        if call is not None:
            calls.append(call)
    return calls


def _brace_delta(line: str) -> int:
    return line.count("{") - line.count("}")


def _from_lines(text: str) -> list[ToolCall]:
    calls: list[ToolCall] = []
    buffer: list[str] = []
    depth = 0
    for line in text.splitlines():
        if not buffer:
            if not line.lstrip().startswith("{"):
                continue
            depth = 0
        buffer.append(line)
        depth += _brace_delta(line)
        if depth <= 0:
            call = normalize_call(decode_json_lenient("\n".join(buffer)))
            if call is not None:
                calls.append(call)
            buffer = []
    if buffer and depth > 0:
        # Output cut off mid-object: close it and try once more.
        repaired = "\n".join(buffer).rstrip().rstrip(",") + "}" * depth
        call = normalize_call(decode_json_lenient(repaired))
        if call is not None:
            calls.append(call)
    return calls


STRATEGIES: tuple[tuple[str, Callable[[str], list[ToolCall]]], ...] = (
    ("tagged", _from_tagged),
    ("fenced", _from_fenced),
    ("balanced", _from_balanced),
    ("lines", _from_lines),
)


def split_think(text: str) -> tuple[str, list[str]]:
    """Remove `<think>` sections; return the remaining text and their contents."""
    thoughts = [item.strip() for item in _THINK_BLOCK_RE.findall(text) if item.strip()]
    remaining = _THINK_BLOCK_RE.sub("", text)
    lowered = remaining.lower()
    if "</think>" in lowered:
        # Opening tag swallowed by the chat template.
        cut = lowered.rindex("</think>")
        head = remaining[:cut].strip()
        if head:
            thoughts.append(head)
        remaining = remaining[cut + len("</think>"):]
    return remaining.strip(), thoughts


def readable_reply(text: str) -> str:
    """Text to show the user when the model answered without a tool call."""
    stripped = text.strip()
    decoded = decode_json_lenient(stripped) if stripped.startswith("{") else None
    if isinstance(decoded, dict):
        for key in _REPLY_KEYS:
            if isinstance(decoded.get(key), str):
                return decoded[key].strip()
    return _strip_fences(stripped)


def implicit_response(text: str, thoughts: list[str] | None = None) -> ToolCall:
    return ToolCall(
        name=RESPONSE_TOOL,
        arguments={"text": readable_reply(text)},
        thoughts=list(thoughts or []),
        implicit=True,
    )


def parse_tool_calls(text: str) -> list[ToolCall]:
    """Parse model output into ordered tool calls. Never raises, never empty."""
    raw = text if isinstance(text, str) else str(text or "")
    try:
        body, think = split_think(raw)
        for strategy, extract in STRATEGIES:
            calls = extract(body)
            if calls:
                if think:
                    calls[0].thoughts = think + calls[0].thoughts
                log.debug("Parsed tool calls", strategy=strategy, count=len(calls))
                return calls
        return [implicit_response(body, think)]
    except Exception as e:
        log.warning("Tool call parsing failed; treating output as reply", error=str(e))
        return [ToolCall(name=RESPONSE_TOOL, arguments={"text": raw.strip()}, implicit=True)]


def format_tool_result(name: str, result: ToolResult) -> str:
    """Render a tool result as the user-role message fed back to the model."""
    if result.success:
        return f"[Tool '{name}' completed successfully]\n{result.output}"
    return f"[Tool '{name}' failed: {result.error_code}]\n{result.error}"


def truncate_text(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n... [truncated {omitted} chars]"
