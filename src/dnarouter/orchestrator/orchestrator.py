"""Orchestrator: turn creation events into stage invocations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from dnarouter.core.exceptions import InvocationError, ObjectNotFound, PartialFanoutFailure
from dnarouter.core.types import Invocation, StageEvent, utcnow
from dnarouter.modules.providers.storage import ObjectStore

from .invoker import InvocationOutcome, Invoker
from .routing import DEFAULT_MAX_AUTO_PROCESS_BYTES, route

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    event: StageEvent
    invocations: list[Invocation] = field(default_factory=list)
    outcomes: dict[str, InvocationOutcome] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.event.object_key,
            "invocations": [
                {"transform": i.transform.value, **i.to_payload()} for i in self.invocations
            ],
            "outcomes": {name: o.result for name, o in self.outcomes.items()},
            "errors": dict(self.errors),
        }


class Orchestrator:
    """Routes each event and invokes every target concurrently.

    No internal retry: a failed branch raises so the event source redelivers.
    Branches that succeeded are never rolled back; redelivery is safe because
    every transform is idempotent.
    """

    def __init__(
        self,
        invoker: Invoker,
        store: ObjectStore | None = None,
        *,
        max_auto_process_bytes: int = DEFAULT_MAX_AUTO_PROCESS_BYTES,
    ) -> None:
        self._invoker = invoker
        self._store = store
        self._max_auto_process_bytes = max_auto_process_bytes

    async def dispatch(self, event: StageEvent, *, force: bool = False) -> DispatchReport:
        invocations = route(
            event, max_auto_process_bytes=self._max_auto_process_bytes, force=force
        )
        report = DispatchReport(event=event, invocations=invocations)
        if not invocations:
            return report

        logger.info(
            "Dispatching %s -> %s",
            event.object_key,
            ", ".join(i.transform.value for i in invocations),
        )
        results = await asyncio.gather(
            *(self._invoker.invoke(i) for i in invocations), return_exceptions=True
        )
        for invocation, outcome in zip(invocations, results):
            name = invocation.transform.value
            if isinstance(outcome, InvocationOutcome):
                report.outcomes[name] = outcome
            elif isinstance(outcome, Exception):
                logger.error("Invocation %s for %s failed: %s", name, event.object_key, outcome)
                report.errors[name] = str(outcome)
            else:
                raise outcome

        if report.errors:
            if report.outcomes:
                raise PartialFanoutFailure(
                    event.object_key, succeeded=sorted(report.outcomes), failed=report.errors
                )
            raise InvocationError(
                f"Every invocation for {event.object_key} failed: {report.errors}"
            )
        return report

    async def trigger(self, key: str, *, force: bool = False) -> DispatchReport:
        """Manual trigger: same classification as an event, optional size-cap bypass."""
        if self._store is None:
            raise InvocationError("Manual trigger needs an object store", code="NO_STORE")
        head = await self._store.head(key)
        if head is None:
            raise ObjectNotFound(key)
        event = StageEvent(object_key=key, size=head.size, created_at=utcnow())
        return await self.dispatch(event, force=force)

    async def aclose(self) -> None:
        await self._invoker.aclose()


__all__ = ["DispatchReport", "Orchestrator"]
