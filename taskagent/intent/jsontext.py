from __future__ import annotations

import json
from typing import Any


def strip_code_fences(raw_text: str) -> str:
    """Remove a surrounding markdown code block (```json ... ```) from model output."""
    cleaned = raw_text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned[:4].lower() == "json":
            cleaned = cleaned[4:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def loads_object(raw_text: str) -> dict[str, Any]:
    """Parse model output into a JSON object.

    Raises json.JSONDecodeError for malformed JSON and ValueError when the payload is
    not an object.
    """
    data = json.loads(strip_code_fences(raw_text))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


__all__ = ["loads_object", "strip_code_fences"]
