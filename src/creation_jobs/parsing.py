"""Tolerant JSON recovery from model output text."""

from __future__ import annotations

import json
import re
from typing import Any

from creation_jobs.errors import TolerantParseError

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_UNCLOSED_FENCE_START = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_UNCLOSED_FENCE_END = re.compile(r"\n?```\s*$")


def parse_json_tolerant(text: str) -> Any:
    """Parse a JSON value out of free-form text.

    Tries, in order: the whole text, the first closed fenced block, an
    unclosed fenced block, and finally the outermost ``{...}`` or ``[...]``
    span. Raises ``TolerantParseError`` when none of them is valid JSON.
    """

    stripped = text.strip()
    if not stripped:
        raise TolerantParseError("Empty text contains no JSON value")

    for candidate in _candidates(stripped):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    preview = stripped[:80].replace("\n", " ")
    raise TolerantParseError(f"No JSON value recoverable from text: {preview!r}")


def parse_json_object(text: str) -> dict[str, Any]:
    """Like ``parse_json_tolerant`` but requires a JSON object."""

    value = parse_json_tolerant(text)
    if not isinstance(value, dict):
        raise TolerantParseError(f"Expected a JSON object, got {type(value).__name__}")
    return value


def _candidates(text: str) -> list[str]:
    candidates = [text]

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        candidates.append(fenced.group(1).strip())
    elif text.startswith("```"):
        unclosed = _UNCLOSED_FENCE_START.sub("", text)
        candidates.append(_UNCLOSED_FENCE_END.sub("", unclosed).strip())

    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start : end + 1])
    return candidates
