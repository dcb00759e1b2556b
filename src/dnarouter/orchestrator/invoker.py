"""Invokers: how the orchestrator reaches a stage transform.

- HttpInvoker: POST to a worker's ``/invoke/{transform}`` endpoint
- InProcessInvoker: run the transform in this process (local runs, tests)

Both enforce the same contract as the worker endpoint: transient item
failures and wall-clock timeouts fail the invocation so the platform
redelivers the event.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from dnarouter.core.exceptions import InvalidInput, InvocationError, InvocationTimeout
from dnarouter.core.types import Invocation, ObjectKey, StageResult, TransformName
from dnarouter.modules.stages import StageTransform

logger = logging.getLogger(__name__)


@dataclass
class InvocationOutcome:
    invocation: Invocation
    result: dict[str, Any] = field(default_factory=dict)


async def execute(
    transform: StageTransform, invocation: Invocation, *, timeout: float | None
) -> StageResult:
    """Run one invocation under its wall-clock budget.

    Tickets held by a cancelled call are released by the admission slot.

    Raises:
        InvalidInput: the source key is not a pipeline object.
        InvocationTimeout: the budget elapsed.
    """
    ref = ObjectKey.parse(invocation.source_key)
    if ref is None:
        raise InvalidInput(f"{invocation.source_key!r} is not a pipeline object key")
    if ref.user_id != invocation.user_id:
        raise InvalidInput(f"{invocation.source_key!r} does not belong to user {invocation.user_id!r}")
    try:
        return await asyncio.wait_for(transform.process([ref]), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise InvocationTimeout(
            f"{invocation.transform.value} on {invocation.source_key} exceeded {timeout}s"
        ) from e


class Invoker(ABC):
    @abstractmethod
    async def invoke(self, invocation: Invocation) -> InvocationOutcome:
        """Run one invocation. Raises InvocationError (or a subclass) on failure."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class InProcessInvoker(Invoker):
    def __init__(
        self, transforms: dict[TransformName, StageTransform], *, timeout: float | None = None
    ) -> None:
        self._transforms = transforms
        self._timeout = timeout

    async def invoke(self, invocation: Invocation) -> InvocationOutcome:
        transform = self._transforms.get(invocation.transform)
        if transform is None:
            raise InvocationError(f"No transform registered for {invocation.transform.value}")
        result = await execute(transform, invocation, timeout=self._timeout)
        if result.has_retryable_failures:
            raise InvocationError(
                f"{invocation.transform.value} on {invocation.source_key} has retryable failures",
                code="RETRYABLE_ITEM_FAILURES",
            )
        return InvocationOutcome(invocation=invocation, result=result.to_dict())


class HttpInvoker(Invoker):
    """POSTs ``{sourceKey, userId}`` to ``{base_url}/invoke/{transform}``."""

    def __init__(
        self, base_url: str, *, timeout: float = 900.0, client: httpx.AsyncClient | None = None
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def invoke(self, invocation: Invocation) -> InvocationOutcome:
        path = f"/invoke/{invocation.transform.value}"
        try:
            response = await self._client.post(path, json=invocation.to_payload())
        except httpx.HTTPError as e:
            logger.error("Invoke %s failed: %s", path, e)
            raise InvocationError(f"{path} unreachable: {e}", code="INVOKE_TRANSPORT") from e

        if response.status_code >= 300:
            logger.error(
                "Invoke %s for %s returned %d", path, invocation.source_key, response.status_code
            )
            raise InvocationError(
                f"{path} returned {response.status_code}", code=f"INVOKE_HTTP_{response.status_code}"
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
        return InvocationOutcome(invocation=invocation, result=body if isinstance(body, dict) else {})

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["HttpInvoker", "InProcessInvoker", "InvocationOutcome", "Invoker", "execute"]
