"""Inference client interface.

Stage transforms see the external API as ``submit(prompt) -> dict``: one
request, one JSON document back. Providers raise the transient/permanent
errors from ``dnarouter.core.exceptions`` so the stage harness can decide
whether to retry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Prompt:
    """A rendered prompt: system instruction plus user content."""

    system: str
    user: str
    temperature: float | None = None


class InferenceClient(ABC):
    """Rate-limited external inference API."""

    @abstractmethod
    async def submit(self, prompt: Prompt) -> dict[str, Any]:
        """Send one prompt and return the parsed JSON response.

        Raises:
            UpstreamThrottled: the API is over capacity (retryable).
            UpstreamUnavailable: timeout, connection failure or 5xx (retryable).
            UpstreamRejected: the API refused this input (permanent).
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


__all__ = ["InferenceClient", "Prompt"]
