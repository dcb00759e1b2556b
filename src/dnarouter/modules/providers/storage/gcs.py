"""GCS object store (Google Cloud Storage).

Creation events are delivered by bucket notifications (Pub/Sub push to the
service's ``/events`` endpoint), not by this class.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from dnarouter.core.exceptions import ConfigurationError, ObjectNotFound, PreconditionFailed, StorageError

from .base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)


class GCSObjectStore(ObjectStore):
    """Google Cloud Storage backed object store.

    The google-cloud-storage client is synchronous; calls run in a worker
    thread so the event loop stays free while blobs transfer.
    """

    def __init__(self, bucket: str, *, project_id: str = "", client: Any = None) -> None:
        if not bucket:
            raise ConfigurationError("GCS bucket name is required", code="GCS_NO_BUCKET")
        self._bucket_name = bucket
        self._project_id = project_id
        self._client: Any = client

    def _get_client(self) -> Any:
        """Lazy-init GCS client."""
        if self._client is None:
            from google.cloud import storage

            self._client = storage.Client(project=self._project_id or None)
        return self._client

    def _bucket(self) -> Any:
        return self._get_client().bucket(self._bucket_name)

    async def get(self, key: str) -> StoredObject:
        def _read() -> StoredObject:
            blob = self._bucket().get_blob(key)
            if blob is None:
                raise ObjectNotFound(key)
            data = blob.download_as_bytes(if_generation_match=blob.generation)
            return StoredObject(
                key=key,
                data=data,
                generation=int(blob.generation or 0),
                content_type=blob.content_type or "application/octet-stream",
                updated_at=blob.updated,
            )

        try:
            return await asyncio.to_thread(_read)
        except ObjectNotFound:
            raise
        except Exception as e:
            if _is_not_found(e):
                raise ObjectNotFound(key) from e
            logger.error("GCS read failed: bucket=%s key=%s error=%s", self._bucket_name, key, e)
            raise StorageError(f"GCS read failed: {e}", code="GCS_READ_ERROR") from e

    async def head(self, key: str) -> StoredObject | None:
        def _head() -> StoredObject | None:
            blob = self._bucket().get_blob(key)
            if blob is None:
                return None
            return StoredObject(
                key=key,
                data=b"",
                generation=int(blob.generation or 0),
                content_type=blob.content_type or "application/octet-stream",
                updated_at=blob.updated,
                content_length=int(blob.size or 0),
            )

        try:
            return await asyncio.to_thread(_head)
        except Exception as e:
            logger.error("GCS head failed: bucket=%s key=%s error=%s", self._bucket_name, key, e)
            raise StorageError(f"GCS head failed: {e}", code="GCS_READ_ERROR") from e

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        if_generation_match: int | None = None,
    ) -> StoredObject:
        def _write() -> StoredObject:
            blob = self._bucket().blob(key)
            kwargs: dict[str, Any] = {"content_type": content_type}
            if if_generation_match is not None:
                kwargs["if_generation_match"] = if_generation_match
            blob.upload_from_string(data, **kwargs)
            return StoredObject(
                key=key,
                data=data,
                generation=int(blob.generation or 0),
                content_type=content_type,
            )

        try:
            obj = await asyncio.to_thread(_write)
        except Exception as e:
            if _is_precondition_failed(e):
                raise PreconditionFailed(key, if_generation_match) from e
            logger.error("GCS write failed: bucket=%s key=%s error=%s", self._bucket_name, key, e)
            raise StorageError(f"GCS write failed: {e}", code="GCS_WRITE_ERROR") from e

        logger.info("GCS write: bucket=%s key=%s size=%d", self._bucket_name, key, len(data))
        return obj

    async def list(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            blobs = self._get_client().list_blobs(self._bucket_name, prefix=prefix)
            return sorted(b.name for b in blobs if not b.name.endswith("/"))

        try:
            return await asyncio.to_thread(_list)
        except Exception as e:
            logger.error("GCS list failed: bucket=%s prefix=%s error=%s", self._bucket_name, prefix, e)
            raise StorageError(f"GCS list failed: {e}", code="GCS_LIST_ERROR") from e


def _is_precondition_failed(exc: Exception) -> bool:
    from google.api_core import exceptions as gexc

    return isinstance(exc, gexc.PreconditionFailed)


def _is_not_found(exc: Exception) -> bool:
    from google.api_core import exceptions as gexc

    return isinstance(exc, gexc.NotFound)


__all__ = ["GCSObjectStore"]
