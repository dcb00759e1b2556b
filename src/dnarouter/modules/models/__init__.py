"""Inference clients."""

from __future__ import annotations

from .base import InferenceClient, Prompt
from .json import safe_json_loads, strip_json_fence
from .openai import OpenAIInferenceClient

__all__ = [
    "InferenceClient",
    "OpenAIInferenceClient",
    "Prompt",
    "safe_json_loads",
    "strip_json_fence",
]
