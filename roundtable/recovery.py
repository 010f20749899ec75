"""Structured output recovery — turn unreliable model text into a JSON object.

Every agent that is expected to answer in JSON goes through recover():

  1. Parse the raw text as-is.
  2. If that fails, walk the repair ladder on the same text:
       a. strip one fenced block (```json ... ```)
       b. best-effort repair (control chars, missing/trailing commas,
          unquoted keys, Python literals, truncated tails)
       c. cut out the first balanced {...} span and parse that
  3. A top-level array is reduced to its first element when that element
     is an object; anything else that is not an object is a failure.
  4. An object rejected by the caller's validator is a failure too.
  5. While attempts remain, ask the producer for a fresh generation and
     start over.

The result is a tagged value, Ok or Failed, never an exception. Errors
raised by the producer itself (the LLM call) are not caught here.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

ErrorKind = Literal["empty_output", "parse_failed", "not_an_object", "validation_failed"]

Validator = Callable[[dict[str, Any]], bool]
Producer = Callable[[], Awaitable[str]]


@dataclass
class StructuredOutputAttempt:
    raw_text: str
    attempt_number: int
    parsed: dict[str, Any] | None = None
    error: ErrorKind | None = None


@dataclass(frozen=True)
class Ok:
    value: dict[str, Any]
    raw_text: str
    attempts: list[StructuredOutputAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    last_raw: str
    attempts: list[StructuredOutputAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False


StructuredResult = Ok | Failed


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

def has_text(field_name: str) -> Validator:
    """Validator: `field_name` must be a non-blank string."""

    def _check(data: dict[str, Any]) -> bool:
        value = data.get(field_name)
        return isinstance(value, str) and bool(value.strip())

    return _check


# ---------------------------------------------------------------------------
# Parsing ladder
# ---------------------------------------------------------------------------

_ENCLOSING_FENCE = re.compile(r"^```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)
_EMBEDDED_FENCE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)


def strip_fence(text: str) -> str | None:
    """Return the body of one fenced block, or None if there is no closed fence."""
    stripped = text.strip()
    match = _ENCLOSING_FENCE.match(stripped)
    if match is None:
        match = _EMBEDDED_FENCE.search(stripped)
    if match is None:
        return None
    return match.group(1).strip()


def extract_first_object(text: str) -> str | None:
    """Return the first balanced {...} span, counting braces outside strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _split_strings(text: str) -> list[tuple[bool, str]]:
    """Split text into (is_string_literal, chunk) pieces."""
    pieces: list[tuple[bool, str]] = []
    buf: list[str] = []
    in_str = False
    esc = False
    for ch in text:
        if in_str:
            buf.append(ch)
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                pieces.append((True, "".join(buf)))
                buf = []
                in_str = False
            continue
        if ch == '"':
            if buf:
                pieces.append((False, "".join(buf)))
            buf = [ch]
            in_str = True
            continue
        buf.append(ch)
    if buf:
        pieces.append((in_str, "".join(buf)))
    return pieces


def _escape_control_chars(text: str) -> str:
    result = []
    in_string = False
    escape_next = False
    for ch in text:
        if escape_next:
            result.append(ch)
            escape_next = False
            continue
        if ch == "\\":
            result.append(ch)
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            result.append(ch)
            continue
        if in_string:
            if ch == "\n":
                result.append("\\n")
                continue
            if ch == "\r":
                result.append("\\r")
                continue
            if ch == "\t":
                result.append("\\t")
                continue
        result.append(ch)
    return "".join(result)


def _fix_structure(chunk: str) -> str:
    """Fixes that must only touch text outside string literals."""
    # Unquoted keys: {foo: 1, bar_baz: 2}
    chunk = re.sub(r"([{,]\s*)([A-Za-z_][\w\-]*)(\s*:)", r'\1"\2"\3', chunk)
    # Python literals
    chunk = re.sub(r"\bTrue\b", "true", chunk)
    chunk = re.sub(r"\bFalse\b", "false", chunk)
    chunk = re.sub(r"\bNone\b", "null", chunk)
    # Trailing commas
    chunk = re.sub(r",(\s*[}\]])", r"\1", chunk)
    return chunk


def _open_closers(text: str) -> tuple[list[str], bool]:
    """Closers still owed at the end of text, and whether a string is open."""
    stack: list[str] = []
    in_str = False
    esc = False
    for ch in text:
        if esc:
            esc = False
            continue
        if ch == "\\":
            esc = True
            continue
        if ch == '"':
            in_str = not in_str
            continue
        if in_str:
            continue
        if ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in "}]" and stack:
            stack.pop()
    return stack, in_str


def _close_truncated(text: str) -> str:
    stack, in_str = _open_closers(text)
    if not stack and not in_str:
        return text
    if in_str:
        text += '"'
    text = text.rstrip()
    # A key that never got its value: {"a": 1, "b"
    if stack and stack[-1] == "}":
        dangling = re.search(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*$', text)
        if dangling:
            text = text[:dangling.start() + 1]
    while True:
        stripped = text.rstrip()
        if stripped.endswith(","):
            text = stripped[:-1]
            continue
        if stripped.endswith(":"):
            # trailing `"b":` with no value, drop the orphaned key
            m = re.search(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*:$', stripped)
            text = stripped[:m.start() + 1] if m else stripped[:-1]
            continue
        break
    stack, _ = _open_closers(text)
    return text + "".join(reversed(stack))


def repair_json(text: str) -> str:
    """Best-effort repair of common model JSON mistakes.

    Only used after json.loads() already failed on the text.
    """
    text = _escape_control_chars(text.strip())

    # Missing commas between lines
    text = re.sub(r'("\s*)\n(\s*")', r"\1,\n\2", text)
    text = re.sub(r'([}\]]\s*)\n(\s*["{\[])', r"\1,\n\2", text)
    text = re.sub(r'(\d\s*)\n(\s*")', r"\1,\n\2", text)
    text = re.sub(r'((?:true|false|null)\s*)\n(\s*")', r"\1,\n\2", text)

    text = "".join(
        chunk if is_str else _fix_structure(chunk)
        for is_str, chunk in _split_strings(text)
    )
    return _close_truncated(text)


def _candidates(text: str) -> Iterator[str]:
    stripped = text.strip()
    yield stripped
    base = stripped
    fenced = strip_fence(stripped)
    if fenced is not None:
        yield fenced
        base = fenced
    yield repair_json(base)
    span = extract_first_object(base)
    if span is not None:
        yield span
        yield repair_json(span)
    elif "{" in base:
        # Unbalanced: the object runs to the end of the text
        yield repair_json(base[base.index("{"):])


def _as_object(data: Any) -> dict[str, Any] | None:
    if isinstance(data, dict):
        return data
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return None


def parse_object(text: str | None) -> tuple[dict[str, Any] | None, ErrorKind | None]:
    """Run the repair ladder over one text. Returns (object, None) or (None, kind)."""
    if text is None or not text.strip():
        return None, "empty_output"
    kind: ErrorKind = "parse_failed"
    seen: set[str] = set()
    for candidate in _candidates(text):
        if candidate in seen:
            continue
        seen.add(candidate)
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, RecursionError):
            continue
        obj = _as_object(data)
        if obj is not None:
            return obj, None
        kind = "not_an_object"
    return None, kind


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------

async def recover(
    raw_text: str | None,
    produce: Producer,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    validate: Validator | None = None,
    label: str = "agent",
) -> StructuredResult:
    """Recover a JSON object from `raw_text`, regenerating via `produce()` on failure.

    When `raw_text` is None the first attempt also calls `produce()`.
    At least one attempt is always made.
    """
    attempts: list[StructuredOutputAttempt] = []
    text = raw_text
    total = max(1, max_attempts)
    for number in range(1, total + 1):
        if text is None or number > 1:
            text = await produce()
        text = text or ""

        parsed, kind = parse_object(text)
        if parsed is not None and validate is not None and not validate(parsed):
            attempts.append(StructuredOutputAttempt(text, number, parsed, "validation_failed"))
        else:
            attempts.append(StructuredOutputAttempt(text, number, parsed, kind))
            if parsed is not None:
                if number > 1:
                    logger.info("%s: structured output recovered on attempt %d", label, number)
                return Ok(parsed, text, attempts)

        logger.warning(
            "%s: attempt %d/%d failed (%s): %r",
            label, number, total, attempts[-1].error, text[:200],
        )

    last = attempts[-1]
    return Failed(last.error or "parse_failed", last.raw_text, attempts)
