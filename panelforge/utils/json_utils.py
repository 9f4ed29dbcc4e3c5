"""
JSON helpers for model output.

Models asked for JSON sometimes wrap it in Markdown fences or surround it
with prose; these helpers recover the object.
"""

import json
import re
from typing import Any, Dict

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_model_json(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object from model output.

    Tries the fence-stripped text first, then the outermost ``{...}`` block.

    Raises:
        ValueError: If no JSON object can be recovered
    """
    if not text or not text.strip():
        raise ValueError("Empty model response")

    cleaned = strip_code_fences(text)
    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            raise ValueError(f"No JSON object found in response: {cleaned[:100]}")
        try:
            result = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in response: {e}") from e

    if not isinstance(result, dict):
        raise ValueError(f"Expected a JSON object, got {type(result).__name__}")
    return result
