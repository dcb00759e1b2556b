"""In-memory object store for local runs and tests.

Emits a StageEvent to every subscriber after each successful write, the same
way a bucket notification would. State is per-process; this store is not a
substitute for a shared bucket in a deployed fleet.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from dnarouter.core.exceptions import ObjectNotFound, PreconditionFailed
from dnarouter.core.types import StageEvent, utcnow

from .base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)

EventListener = Callable[[StageEvent], Awaitable[None] | None]


class InMemoryObjectStore(ObjectStore):
    def __init__(self) -> None:
        self._objects: dict[str, StoredObject] = {}
        self._generation = 0
        self._lock = asyncio.Lock()
        self._listeners: list[EventListener] = []
        # Every successful write, in order (key, generation).
        self.write_log: list[tuple[str, int]] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def get(self, key: str) -> StoredObject:
        obj = self._objects.get(key)
        if obj is None:
            raise ObjectNotFound(key)
        return obj

    async def head(self, key: str) -> StoredObject | None:
        obj = self._objects.get(key)
        if obj is None:
            return None
        return StoredObject(
            key=obj.key,
            data=b"",
            generation=obj.generation,
            content_type=obj.content_type,
            updated_at=obj.updated_at,
            content_length=obj.size,
        )

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        if_generation_match: int | None = None,
    ) -> StoredObject:
        async with self._lock:
            current = self._objects.get(key)
            if if_generation_match is not None:
                current_gen = current.generation if current else 0
                if current_gen != if_generation_match:
                    raise PreconditionFailed(key, if_generation_match)
            self._generation += 1
            obj = StoredObject(
                key=key,
                data=bytes(data),
                generation=self._generation,
                content_type=content_type,
                updated_at=utcnow(),
            )
            self._objects[key] = obj
            self.write_log.append((key, obj.generation))

        logger.debug("memory write: key=%s size=%d generation=%d", key, obj.size, obj.generation)
        event = StageEvent(object_key=key, size=obj.size, created_at=obj.updated_at)
        for listener in self._listeners:
            result = listener(event)
            if asyncio.iscoroutine(result):
                await result
        return obj

    async def list(self, prefix: str) -> list[str]:
        return sorted(k for k in self._objects if k.startswith(prefix))

    def writes_for(self, key: str) -> int:
        """How many times ``key`` was written."""
        return sum(1 for k, _ in self.write_log if k == key)


__all__ = ["InMemoryObjectStore"]
