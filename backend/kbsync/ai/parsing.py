"""Shared utilities for parsing completion responses."""

import json
import re
from typing import Any, List, Optional

_FIRST_ARRAY = re.compile(r"\[[\s\S]*?\]")


def strip_code_fences(raw: str) -> str:
    """Drop markdown ``` fence lines, keeping what they wrap."""
    text = raw.strip()
    if "```" not in text:
        return text
    lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
    return "\n".join(lines).strip()


def parse_llm_json(raw: Optional[str]) -> Optional[dict]:
    """Parse a JSON object from a completion, handling fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return None
    """
    if not raw:
        return None

    text = strip_code_fences(raw)
    try:
        value = json.loads(text)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            value = json.loads(raw[start:end])
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass

    return None


def parse_llm_json_array(raw: Optional[str]) -> Optional[List[Any]]:
    """Parse a JSON array from a completion.

    Fences are stripped first; if the whole text is not an array, the first
    ``[...]`` block is tried. Returns None when nothing parses.
    """
    if not raw:
        return None

    text = strip_code_fences(raw)
    try:
        value = json.loads(text)
        if isinstance(value, list):
            return value
    except json.JSONDecodeError:
        pass

    # Greedy first, then shortest match, to tolerate trailing prose with brackets
    candidates = []
    start = text.find("[")
    end = text.rfind("]") + 1
    if start >= 0 and end > start:
        candidates.append(text[start:end])
    match = _FIRST_ARRAY.search(text)
    if match:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, list):
            return value
    return None
