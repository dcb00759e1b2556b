"""HTTP service and runtime wiring."""

from __future__ import annotations

from .app import create_app
from .runtime import Runtime, build_local_pipeline, build_runtime

__all__ = ["Runtime", "build_local_pipeline", "build_runtime", "create_app"]
