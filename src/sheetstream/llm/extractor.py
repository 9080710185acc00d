"""Locate a single JSON object inside free-form model output.

Strategies, first match wins:
  1. fenced   - a ```` ``` ```` / ```` ```json ```` block whose body is ``{...}``
  2. balanced - exact brace-depth scan from the first ``{``, string aware
  3. regex    - greedy first ``{`` to last ``}``
"""

from __future__ import annotations

import logging
import re

from sheetstream.types import ExtractionMethod, ExtractionResult, Found, NotFound

_logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_GREEDY_RE = re.compile(r"\{[\s\S]*\}")


def extract(text: str) -> ExtractionResult:
    """Return the JSON object substring of *text*, or ``NotFound``."""
    fenced = _extract_fenced(text)
    if fenced is not None:
        _logger.debug("JSON extracted from fenced block")
        return Found(fenced, ExtractionMethod.FENCED)

    balanced = extract_balanced_json(text)
    if balanced is not None:
        _logger.debug("JSON extracted by balanced-brace scan")
        return Found(balanced, ExtractionMethod.BALANCED)

    greedy = _extract_greedy(text)
    if greedy is not None:
        _logger.debug("JSON extracted by greedy regex fallback")
        return Found(greedy, ExtractionMethod.REGEX)

    return NotFound()


def _extract_fenced(text: str) -> str | None:
    match = _FENCED_RE.search(text)
    if not match:
        return None
    inner = match.group(1).strip()
    if inner.startswith("{") and inner.endswith("}"):
        return inner
    return None


def extract_balanced_json(text: str, start: int | None = None) -> str | None:
    """Extract a balanced JSON object beginning at *start* (default: first ``{``).

    Braces inside string literals do not count, and a backslash inside a
    string escapes the next character, so ``"a \\" {"`` never changes the
    depth.  Returns ``None`` if the object is never closed.
    """
    if start is None:
        start = text.find("{")
    if start < 0 or start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _extract_greedy(text: str) -> str | None:
    match = _GREEDY_RE.search(text)
    if not match:
        return None
    candidate = match.group(0).strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        return candidate
    return None
