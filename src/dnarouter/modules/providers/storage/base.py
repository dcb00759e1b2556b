"""Object store interface.

Keys are hierarchical (``{user_id}/{stage}/{name}``). Writes may be
conditioned on the object's current generation so aggregate documents can be
updated with optimistic concurrency; ``if_generation_match=0`` means "only if
the object does not exist yet".
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dnarouter.core.exceptions import InvalidInput, ObjectNotFound
from dnarouter.core.types import utcnow


@dataclass
class StoredObject:
    key: str
    data: bytes
    generation: int
    content_type: str = "application/octet-stream"
    updated_at: datetime = field(default_factory=utcnow)
    # Set by metadata-only reads, where `data` is empty.
    content_length: int | None = None

    @property
    def size(self) -> int:
        return len(self.data) if self.content_length is None else self.content_length

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidInput(f"{self.key} is not valid JSON: {e}") from e


def encode_json(doc: Any) -> bytes:
    return json.dumps(doc, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")


class ObjectStore(ABC):
    """Durable key/value store with creation events."""

    @abstractmethod
    async def get(self, key: str) -> StoredObject:
        """Read an object. Raises ObjectNotFound."""

    @abstractmethod
    async def head(self, key: str) -> StoredObject | None:
        """Metadata only (``data`` is empty); None if missing."""

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        if_generation_match: int | None = None,
    ) -> StoredObject:
        """Write an object. Raises PreconditionFailed on generation mismatch."""

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        """Keys under ``prefix``, sorted."""

    async def exists(self, key: str) -> bool:
        return await self.head(key) is not None

    async def get_optional(self, key: str) -> StoredObject | None:
        try:
            return await self.get(key)
        except ObjectNotFound:
            return None

    async def put_json(
        self, key: str, doc: Any, *, if_generation_match: int | None = None
    ) -> StoredObject:
        return await self.put(
            key,
            encode_json(doc),
            content_type="application/json",
            if_generation_match=if_generation_match,
        )


__all__ = ["ObjectStore", "StoredObject", "encode_json"]
