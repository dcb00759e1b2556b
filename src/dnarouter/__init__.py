"""dnarouter: event-triggered multi-stage pipeline for personal data exports.

Objects land under ``{user_id}/{stage}/...``; each creation event is routed
to the stage transforms that consume that stage, and every call to the
rate-limited inference API passes a fleet-wide admission gate.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
