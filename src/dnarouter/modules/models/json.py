"""JSON helpers for model output."""

from __future__ import annotations

import json
import re
from typing import Any

_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def strip_json_fence(text: str) -> str:
    """Remove common ```json fences from LLM output (best-effort)."""
    raw = (text or "").strip()
    if not raw.startswith("```"):
        return raw
    # Strip leading/trailing backticks and optional language header.
    raw = raw.strip("`").strip()
    if raw.startswith("json"):
        raw = raw[4:].lstrip()
    return raw.strip()


def safe_json_loads(text: str, default: Any = None) -> Any:
    """Safely parse JSON, returning default on failure.

    Handles ```json fences, and falls back to the outermost ``{...}`` span
    when the model wrapped the object in prose.
    """
    if not text:
        return default
    cleaned = strip_json_fence(text)
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, TypeError):
        pass
    match = _OBJECT_RE.search(cleaned)
    if match is None:
        return default
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return default


__all__ = ["safe_json_loads", "strip_json_fence"]
