"""OpenAI inference provider.

Thin adapter from the ``InferenceClient`` contract to `langchain-openai`'s
``ChatOpenAI``. SDK retries are disabled: the stage harness owns retry and
backoff, and the admission controller owns concurrency.
"""

from __future__ import annotations

import logging
from typing import Any

import openai
from langchain_core.messages import HumanMessage, SystemMessage

from dnarouter.core.config import OpenAIConfig
from dnarouter.core.exceptions import (
    ConfigurationError,
    UpstreamRejected,
    UpstreamThrottled,
    UpstreamUnavailable,
)

from .base import InferenceClient, Prompt
from .json import safe_json_loads

logger = logging.getLogger(__name__)


class OpenAIInferenceClient(InferenceClient):
    """Chat Completions in JSON mode.

    Args:
        settings: OpenAI section of the dnarouter config.
        model: Pre-built chat model (tests inject a fake).
    """

    def __init__(self, settings: OpenAIConfig, *, model: Any = None) -> None:
        self._settings = settings
        self._model = model

    def _get_model(self) -> Any:
        if self._model is None:
            from langchain_openai import ChatOpenAI

            if not self._settings.api_key:
                raise ConfigurationError("OPENAI_API_KEY is required", code="OPENAI_NO_KEY")
            # No SDK retries: the stage harness retries with its own backoff.
            self._model = ChatOpenAI(
                model=self._settings.model,
                api_key=self._settings.api_key,
                organization=self._settings.organization,
                max_retries=0,
                timeout=self._settings.request_timeout_seconds,
            )
        return self._model

    async def submit(self, prompt: Prompt) -> dict[str, Any]:
        temperature = (
            self._settings.temperature if prompt.temperature is None else prompt.temperature
        )
        model = self._get_model().bind(
            temperature=temperature,
            max_tokens=self._settings.max_tokens,
            response_format={"type": "json_object"},
        )
        messages = [SystemMessage(content=prompt.system), HumanMessage(content=prompt.user)]

        try:
            msg = await model.ainvoke(messages)
        except openai.RateLimitError as e:
            error_str = str(e).lower()
            if "insufficient_quota" in error_str or "billing" in error_str:
                raise UpstreamUnavailable(f"OpenAI quota exhausted: {e}", code="UPSTREAM_QUOTA") from e
            raise UpstreamThrottled(f"OpenAI rate limited: {e}") from e
        except openai.APIConnectionError as e:
            # Includes APITimeoutError.
            raise UpstreamUnavailable(f"OpenAI unreachable: {e}") from e
        except openai.InternalServerError as e:
            raise UpstreamUnavailable(f"OpenAI server error: {e}") from e
        except (openai.BadRequestError, openai.UnprocessableEntityError) as e:
            raise UpstreamRejected(f"OpenAI rejected the request: {e}") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise UpstreamRejected(f"OpenAI refused credentials: {e}", code="UPSTREAM_AUTH") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise UpstreamUnavailable(f"OpenAI error {e.status_code}: {e}") from e
            raise UpstreamRejected(f"OpenAI error {e.status_code}: {e}") from e

        text = getattr(msg, "content", "")
        if isinstance(text, list):
            text = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block) for block in text
            )
        if not text:
            logger.warning("OpenAI returned empty content. Full response: %s", msg)
            raise UpstreamRejected("OpenAI returned empty content", code="UPSTREAM_EMPTY")

        doc = safe_json_loads(str(text))
        if not isinstance(doc, dict):
            logger.warning("OpenAI returned non-object JSON (%d chars)", len(str(text)))
            raise UpstreamRejected("OpenAI response is not a JSON object", code="UPSTREAM_BAD_JSON")
        return doc


__all__ = ["OpenAIInferenceClient"]
