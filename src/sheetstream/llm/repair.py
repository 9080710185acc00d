"""Parse extracted JSON, applying textual repairs when needed.

Passes run cumulatively, in order, with a parse attempt after each:

  1. ``strip_trailing_commas``   ``{"a": 1,}`` -> ``{"a": 1}``
  2. ``strip_control_chars``     raw 0x00-0x08, 0x0B, 0x0C, 0x0E-0x1F, 0x7F removed
  3. ``single_to_double_quotes`` every ``'`` becomes ``"``

Pass 3 is a blunt heuristic: it corrupts values containing apostrophes
("don't").  It is kept as the last resort because well-formed output never
reaches it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from sheetstream.types import Failed, Parsed, ParseResult

_logger = logging.getLogger(__name__)

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS_RE.sub("", text)


def single_to_double_quotes(text: str) -> str:
    return text.replace("'", '"')


REPAIR_PASSES: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("strip_trailing_commas", strip_trailing_commas),
    ("strip_control_chars", strip_control_chars),
    ("single_to_double_quotes", single_to_double_quotes),
)


def _try_parse(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except json.JSONDecodeError:
        return False, None


def parse_with_repairs(candidate: str) -> ParseResult:
    """Parse *candidate*, repairing it pass by pass until it parses."""
    ok, value = _try_parse(candidate)
    if ok:
        return Parsed(value)

    _logger.warning("JSON parse failed, attempting repair")
    attempted: list[str] = []
    fixed = candidate
    for name, repair in REPAIR_PASSES:
        fixed = repair(fixed)
        attempted.append(name)
        ok, value = _try_parse(fixed)
        if ok:
            _logger.info("JSON repaired after pass %s", name)
            return Parsed(value, tuple(attempted))

    _logger.warning("JSON repair failed after passes: %s", ", ".join(attempted))
    return Failed(tuple(attempted))
