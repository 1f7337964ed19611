"""JSON recovery cascade for free-form model output.

Vision models are asked for a bare JSON object but regularly wrap it in
prose or code fences, leave literal newlines inside strings, produce huge
reference blocks or stop mid-string.  ``recover`` runs an ordered chain of
independent strategies and returns the first value the caller's shape
validator accepts:

  1. direct_parse     whole text as JSON
  2. balanced_braces  first balanced {...} span, string-aware
  3. code_block       ```json / ``` fenced block, closed or truncated
  4. cleanup          strip conversational boilerplate, retry 1-2
  5. repair           close runaway strings, escape newlines, truncate
  6. lenient          json_repair (trailing commas, single quotes, comments)

Every strategy is a pure function ``str -> Any`` that raises
``ParseFailure``; nothing here performs I/O.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import json_repair

from suppfacts.modules.extraction.shapes import ANY_OBJECT

MAX_STRING_LENGTH = 2000
TRUNCATION_MARKER = "..."
PREVIEW_CHARS = 500
ANOMALY_CONTEXT = 30
MAX_ANOMALIES = 20


class Strategy(str, Enum):
    DIRECT_PARSE = "direct_parse"
    BALANCED_BRACES = "balanced_braces"
    CODE_BLOCK = "code_block"
    CLEANUP = "cleanup"
    REPAIR = "repair"
    LENIENT = "lenient"


class ParseFailure(ValueError):
    """A single strategy could not produce a value."""


class ShapeMismatch(ParseFailure):
    """A strategy produced a value but the shape validator rejected it."""


@dataclass(frozen=True)
class Recovered:
    value: Any
    strategy: Strategy


@dataclass(frozen=True)
class Anomaly:
    """Suspicious pattern in raw text, reported when recovery fails."""

    kind: str  # unescaped_newline | adjacent_quotes | oversized_string
    position: int
    context: str


class RecoveryError(Exception):
    """Raised when every strategy failed or was rejected."""

    def __init__(
        self,
        attempts: list[tuple[Strategy, str]],
        preview: str,
        anomalies: list[Anomaly],
    ) -> None:
        super().__init__(f"All {len(attempts)} JSON recovery strategies failed")
        self.attempts = attempts
        self.preview = preview
        self.anomalies = anomalies


# ---------------------------------------------------------------------------
# Scanning helpers
# ---------------------------------------------------------------------------


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, RecursionError) as exc:
        raise ParseFailure(str(exc)) from exc


def find_balanced_json(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, ignoring braces in strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


_MEMBER_START = re.compile(r'\s*"(?:[^"\\\n]|\\.)*"\s*:')


def _member_follows(text: str, pos: int) -> bool:
    return _MEMBER_START.match(text, pos) is not None


def _closer_follows(text: str, pos: int) -> bool:
    rest = text[pos:].lstrip()
    if not rest or rest[0] in "}]":
        return True
    if rest[0] == ",":
        after = rest[1:].lstrip()
        return after.startswith("{") or _member_follows(rest, 1)
    return False


# ---------------------------------------------------------------------------
# Structural repairs (all string-state aware)
# ---------------------------------------------------------------------------


def close_unterminated_strings(text: str) -> str:
    """Insert a closing quote where a string runs into structure.

    Inside a string, a comma followed by a ``"key":`` member, or a closing
    brace/bracket followed by more closing structure or end of text, ends
    the string.  A string still open at the end of text is closed.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "," and _member_follows(text, i + 1):
                out.append('"')
                in_string = False
            elif ch in "}]" and _closer_follows(text, i + 1):
                out.append('"')
                in_string = False
        elif ch == '"':
            in_string = True
        out.append(ch)
    if in_string:
        out.append('"')
    return "".join(out)


def escape_newlines_in_strings(text: str) -> str:
    """Replace literal CR/LF inside string literals with ``\\n``."""
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
                if ch in "\r\n":
                    # backslash followed by a raw line break
                    out.append("n")
                    continue
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                if text[i + 1 : i + 2] != "\n":
                    out.append("\\n")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


_DANGLING_ESCAPE = re.compile(r"(\\+)(u[0-9a-fA-F]{0,3})?$")


def _bounded(content: str, limit: int) -> str:
    if len(content) <= limit:
        return content
    head = content[: limit - len(TRUNCATION_MARKER)]
    match = _DANGLING_ESCAPE.search(head)
    if match and len(match.group(1)) % 2 == 1:
        # never leave half an escape sequence before the marker
        head = head[: match.end(1) - 1]
    return head + TRUNCATION_MARKER


def truncate_long_strings(text: str, limit: int = MAX_STRING_LENGTH) -> str:
    """Cut string literals longer than ``limit`` characters."""
    out: list[str] = []
    buf: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
                buf = []
            continue
        if escaped:
            escaped = False
            buf.append(ch)
        elif ch == "\\":
            escaped = True
            buf.append(ch)
        elif ch == '"':
            out.append(_bounded("".join(buf), limit))
            out.append(ch)
            in_string = False
        else:
            buf.append(ch)
    if in_string:
        out.append(_bounded("".join(buf), limit))
    return "".join(out)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def direct_parse(text: str) -> Any:
    return _loads(text.strip())


def balanced_braces(text: str) -> Any:
    candidate = find_balanced_json(text)
    if candidate is None:
        raise ParseFailure("no balanced JSON object found")
    return _loads(candidate)


_CODE_BLOCK_PATTERNS = (
    re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE),
    re.compile(r"```\s*(.*?)```", re.DOTALL),
    # truncated responses never emit the closing fence
    re.compile(r"```json\s*(.*)$", re.DOTALL | re.IGNORECASE),
    re.compile(r"```\s*(.*)$", re.DOTALL),
)


def code_block(text: str) -> Any:
    last_error = "no fenced code block found"
    for pattern in _CODE_BLOCK_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        content = match.group(1).strip()
        if not content.startswith("{"):
            last_error = "fenced block does not start with '{'"
            continue
        try:
            return _loads(content)
        except ParseFailure as exc:
            last_error = str(exc)
    raise ParseFailure(last_error)


_BOILERPLATE_PATTERNS = (
    re.compile(r"^\s*here\s+is\s+the\s+(?:extracted\s+)?data\s*:?\s*", re.IGNORECASE),
    re.compile(r"^\s*here'?s\s+the\s+json\s*:?\s*", re.IGNORECASE),
    re.compile(r"^\s*the\s+extracted\s+information\s*:?\s*", re.IGNORECASE),
    re.compile(r"^\s*based\s+on\s+the\s+document\s*,?\s*", re.IGNORECASE),
    re.compile(r"\s*i\s+hope\s+this\s+helps.*$", re.IGNORECASE | re.DOTALL),
    re.compile(r"\s*let\s+me\s+know\s+if\s+you\s+need.*$", re.IGNORECASE | re.DOTALL),
)


def strip_boilerplate(text: str) -> str:
    cleaned = text
    for pattern in _BOILERPLATE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned.strip()


def cleanup(text: str) -> Any:
    cleaned = strip_boilerplate(text)
    if cleaned == text.strip():
        raise ParseFailure("no boilerplate to strip")
    try:
        return direct_parse(cleaned)
    except ParseFailure:
        return balanced_braces(cleaned)


def _object_span(text: str) -> str:
    candidate = find_balanced_json(text)
    if candidate is not None:
        return candidate
    start = text.find("{")
    if start == -1:
        raise ParseFailure("no JSON object start found")
    end = text.rfind("}")
    return text[start : end + 1] if end > start else text[start:]


def repair(text: str) -> Any:
    candidate = _object_span(text)
    repaired = truncate_long_strings(
        escape_newlines_in_strings(close_unterminated_strings(candidate))
    )
    return _loads(repaired)


def lenient(text: str) -> Any:
    source = find_balanced_json(text) or text
    try:
        value = json_repair.loads(source)
    except (ValueError, RecursionError) as exc:
        raise ParseFailure(str(exc)) from exc
    if value in ("", None):
        raise ParseFailure("lenient parser found no JSON value")
    return value


STRATEGIES: tuple[tuple[Strategy, Callable[[str], Any]], ...] = (
    (Strategy.DIRECT_PARSE, direct_parse),
    (Strategy.BALANCED_BRACES, balanced_braces),
    (Strategy.CODE_BLOCK, code_block),
    (Strategy.CLEANUP, cleanup),
    (Strategy.REPAIR, repair),
    (Strategy.LENIENT, lenient),
)

# Strategies whose use means the upstream prompt produced broken JSON
DEGRADED_STRATEGIES = frozenset({Strategy.REPAIR, Strategy.LENIENT})


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def preview(text: str, chars: int = PREVIEW_CHARS) -> str:
    """First and last ``chars`` characters of ``text``."""
    if len(text) <= 2 * chars:
        return text
    return f"{text[:chars]}\n...\n{text[-chars:]}"


def _context(text: str, pos: int) -> str:
    return text[max(0, pos - ANOMALY_CONTEXT) : pos + ANOMALY_CONTEXT]


def detect_anomalies(text: str) -> list[Anomaly]:
    """Find patterns that usually explain why recovery failed."""
    anomalies: list[Anomaly] = []
    in_string = False
    escaped = False
    string_start = 0
    for i, ch in enumerate(text):
        if not in_string:
            if ch == '"':
                in_string = True
                string_start = i
            continue
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            in_string = False
            if i - string_start - 1 > MAX_STRING_LENGTH:
                anomalies.append(
                    Anomaly("oversized_string", string_start, _context(text, string_start))
                )
        elif ch == "\n":
            anomalies.append(Anomaly("unescaped_newline", i, _context(text, i)))

    for match in re.finditer(r'""(?=[^\s,}\]:])', text):
        anomalies.append(Anomaly("adjacent_quotes", match.start(), _context(text, match.start())))

    anomalies.sort(key=lambda a: a.position)
    return anomalies[:MAX_ANOMALIES]


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------


def recover(raw_text: str, validator: Callable[[Any], bool] = ANY_OBJECT) -> Recovered:
    """Run the strategies in order; return the first value ``validator`` accepts.

    Raises:
        RecoveryError: every strategy failed or produced a rejected value.
    """
    attempts: list[tuple[Strategy, str]] = []
    for strategy, parse in STRATEGIES:
        try:
            value = parse(raw_text)
            if not validator(value):
                name = getattr(validator, "name", "shape validator")
                raise ShapeMismatch(f"value rejected by {name}")
        except ParseFailure as exc:
            attempts.append((strategy, str(exc)))
            continue
        return Recovered(value=value, strategy=strategy)

    raise RecoveryError(attempts, preview(raw_text), detect_anomalies(raw_text))
