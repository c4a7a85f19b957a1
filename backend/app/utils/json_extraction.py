"""Recover a JSON object from free-form model output.

Models are asked for bare JSON but sometimes wrap it in markdown fences or
surround it with prose. Recovery runs these stages in order and stops at
the first that yields a JSON object:

1. ``parse_direct``: the text as-is
2. ``strip_code_fences``: remove a ```json ... ``` wrapper, then parse
3. ``extract_brace_span``: take first "{" through last "}", then parse

If every stage fails, ``MalformedResponseError`` carries the raw text.
"""

import json
import re
from collections.abc import Callable
from typing import Any

from app.core.logging import get_logger, pipeline_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*[ \t]*\r?\n?|\r?\n?[ \t]*```$")
_STRING_LITERAL_RE = re.compile(r'"(?:[^"\\]|\\.)*"')


class MalformedResponseError(Exception):
    """Raised when model output cannot be turned into the expected object."""

    def __init__(self, raw_text: str, reason: str = "No JSON object found") -> None:
        self.raw_text = raw_text
        self.reason = reason
        super().__init__(reason)


def _repair_control_chars(text: str) -> str:
    """Escape raw newlines and tabs that models leave inside string values."""

    def _escape(m: re.Match[str]) -> str:
        val = m.group(0)
        val = val.replace("\t", "\\t")
        return val.replace("\r\n", "\\n").replace("\r", "\\n").replace("\n", "\\n")

    return _STRING_LITERAL_RE.sub(_escape, text)


def _try_json_loads(text: str) -> dict[str, Any] | None:
    """Try json.loads (then once more after control-char repair)."""
    for candidate in (text, _repair_control_chars(text)):
        try:
            result = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        return result if isinstance(result, dict) else None
    return None


def parse_direct(text: str) -> dict[str, Any] | None:
    """Parse the trimmed text as a JSON object."""
    return _try_json_loads(text.strip())


def strip_code_fences(text: str) -> dict[str, Any] | None:
    """Parse after removing a surrounding markdown code fence."""
    cleaned = text.strip()
    if not cleaned.startswith("```"):
        return None
    return _try_json_loads(_FENCE_RE.sub("", cleaned).strip())


def extract_brace_span(text: str) -> dict[str, Any] | None:
    """Parse the substring between the first "{" and the last "}"."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return _try_json_loads(text[start : end + 1])


PARSE_STAGES: list[tuple[str, Callable[[str], dict[str, Any] | None]]] = [
    ("direct", parse_direct),
    ("code_fence", strip_code_fences),
    ("brace_span", extract_brace_span),
]


def parse_model_json(text: str) -> dict[str, Any]:
    """Run the recovery stages in order.

    Raises:
        MalformedResponseError: If no stage yields a JSON object
    """
    for stage, parse in PARSE_STAGES:
        parsed = parse(text)
        if parsed is not None:
            if stage != "direct":
                pipeline_logger.parse_fallback(stage, len(text))
            return parsed

    logger.warning(
        "All JSON parse strategies failed",
        extra={"snippet": text[:300], "length": len(text)},
    )
    raise MalformedResponseError(text)
