"""Single-process pipeline: in-memory store events feed the orchestrator.

Events are queued as the store emits them and dispatched one at a time by
``drain()``, so a local run is deterministic: every transform triggered by
an object finishes before the objects it wrote are dispatched.
"""

from __future__ import annotations

import logging
from collections import deque

from dnarouter.core.exceptions import InvocationError
from dnarouter.core.types import StageEvent
from dnarouter.modules.providers.storage import InMemoryObjectStore, StoredObject

from .orchestrator import DispatchReport, Orchestrator

logger = logging.getLogger(__name__)


class LocalPipeline:
    def __init__(self, store: InMemoryObjectStore, orchestrator: Orchestrator) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self._pending: deque[StageEvent] = deque()
        # Dispatch failures, in order. Nothing redelivers them in a local run.
        self.errors: list[InvocationError] = []
        store.subscribe(self._pending.append)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def upload(
        self, key: str, data: bytes, *, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        return await self.store.put(key, data, content_type=content_type)

    async def redeliver(self, key: str) -> None:
        """Queue a duplicate creation event for an existing object."""
        head = await self.store.head(key)
        if head is None:
            raise KeyError(key)
        self._pending.append(StageEvent(object_key=key, size=head.size))

    async def drain(self, *, max_events: int = 10_000) -> list[DispatchReport]:
        reports: list[DispatchReport] = []
        handled = 0
        while self._pending:
            if handled >= max_events:
                raise InvocationError(
                    f"Local pipeline did not quiesce after {max_events} events", code="NO_QUIESCENCE"
                )
            event = self._pending.popleft()
            handled += 1
            try:
                reports.append(await self.orchestrator.dispatch(event))
            except InvocationError as e:
                logger.error("Local dispatch of %s failed: %s", event.object_key, e.message)
                self.errors.append(e)
        return reports


__all__ = ["LocalPipeline"]
