"""Turn an LLM completion into a JSON object, tolerating fences and raw control characters."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .errors import MalformedResponse

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?[ \t]*\r?\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\r?\n?[ \t]*```$")

_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def strip_code_fence(text: str) -> str:
    """Remove a leading ```/```json fence and a trailing ``` fence."""
    cleaned = text.strip()
    cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
    cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def _outer_object(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


def escape_control_characters(text: str) -> str:
    """
    Escape raw newlines/tabs/carriage returns inside JSON string literals.

    Other control characters inside strings are dropped. Characters outside
    string literals are left untouched.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if not in_string:
            if char == '"':
                in_string = True
            out.append(char)
            continue

        if char == "\\":
            escaped = not escaped
            out.append(char)
        elif char == '"' and not escaped:
            in_string = False
            out.append(char)
        else:
            escaped = False
            if char in _ESCAPES:
                out.append(_ESCAPES[char])
            elif ord(char) < 32:
                continue
            else:
                out.append(char)
    return "".join(out)


def extract_json(raw_text: str) -> Any:
    """
    Parse the JSON payload of a completion.

    Raises MalformedResponse (carrying the raw text) when neither the direct
    parse nor the control-character repair pass yields valid JSON.
    """
    candidate = _outer_object(strip_code_fence(raw_text or ""))
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.warning("Initial JSON parse failed (%s); attempting repair", exc)

    try:
        return json.loads(escape_control_characters(candidate))
    except json.JSONDecodeError as exc:
        logger.error("JSON repair failed (%s); raw completion: %.500s", exc, raw_text)
        raise MalformedResponse(raw_text) from exc
