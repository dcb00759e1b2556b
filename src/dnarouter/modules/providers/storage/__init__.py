"""Object store providers.

Active providers:
- GCSObjectStore: Google Cloud Storage (deployed fleet)
- InMemoryObjectStore: local runs and tests, emits events to subscribers
"""

from __future__ import annotations

from typing import Any

from dnarouter.core.exceptions import ConfigurationError

from .base import ObjectStore, StoredObject, encode_json
from .gcs import GCSObjectStore
from .memory import InMemoryObjectStore


def build_object_store(config: Any) -> ObjectStore:
    """Build the configured object store."""
    backend = config.storage.backend
    if backend == "gcs":
        return GCSObjectStore(config.storage.bucket, project_id=config.storage.project_id)
    if backend == "memory":
        return InMemoryObjectStore()
    raise ConfigurationError(f"Unknown storage backend: {backend}")


__all__ = [
    "GCSObjectStore",
    "InMemoryObjectStore",
    "ObjectStore",
    "StoredObject",
    "build_object_store",
    "encode_json",
]
