"""Providers: shared state (Redis), admission control, object storage."""

from __future__ import annotations

from .admission import AdmissionController, stagger_delay
from .redis import RedisProvider

__all__ = ["AdmissionController", "RedisProvider", "stagger_delay"]
