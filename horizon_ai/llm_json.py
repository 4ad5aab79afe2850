"""Utilities for robustly extracting JSON from LLM responses.

The model is asked for bare JSON but may wrap it in prose or code fences.
Extraction is best effort: failure yields ``None``, never an exception.
"""

from __future__ import annotations

import json
import re
from typing import Any

_DECODER = json.JSONDecoder()


def _strip_code_fences(text: str) -> str:
    """Remove surrounding ```...``` fences (with or without 'json') if present."""
    t = text.strip()
    if t.startswith("```") and t.endswith("```"):
        t = re.sub(r"^```[A-Za-z0-9_-]*\s*", "", t, flags=re.DOTALL)
        t = re.sub(r"\s*```$", "", t, flags=re.DOTALL)
    return t.strip()


def _first_decodable(text: str, opener: str, kind: type) -> Any:
    t = _strip_code_fences(text)
    start = t.find(opener)
    while start != -1:
        try:
            value, _ = _DECODER.raw_decode(t, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, kind):
            return value
        start = t.find(opener, start + 1)
    return None


def extract_json_array(text: str | None) -> list | None:
    """Return the first well-formed JSON array embedded in ``text``, else None."""
    if not text:
        return None
    return _first_decodable(text, "[", list)


def extract_json_object(text: str | None) -> dict | None:
    """Return the first well-formed JSON object embedded in ``text``, else None."""
    if not text:
        return None
    return _first_decodable(text, "{", dict)
