"""Key classification and the fixed routing table.

``route`` is pure: it looks only at the event, never at the store.
"""

from __future__ import annotations

import logging

from dnarouter.core.exceptions import ClassificationMiss
from dnarouter.core.types import Invocation, ObjectKey, Stage, StageEvent, TransformName

logger = logging.getLogger(__name__)

DEFAULT_MAX_AUTO_PROCESS_BYTES = 10 * 1024 * 1024

# Total over Stage: every stage has an entry, terminal stages route nowhere.
ROUTING_TABLE: dict[Stage, tuple[TransformName, ...]] = {
    Stage.RAW: (TransformName.PREPROCESSOR,),
    Stage.PREPROCESSED: (TransformName.CATEGORIZER, TransformName.PROFILE_BUILDER),
    Stage.CATEGORIZED: (TransformName.PERSONA_BUILDER,),
    Stage.PROFILE: (),
    Stage.INSIGHTS: (),
}

_IGNORED_MARKERS = (".tmp", "_$folder$")


def is_ignored(key: str) -> bool:
    """Temporary uploads and folder placeholders."""
    return key.endswith("/") or any(marker in key for marker in _IGNORED_MARKERS)


def classify(key: str) -> ObjectKey | None:
    """Parse ``key`` into a pipeline object key, or None when it is not one."""
    if is_ignored(key):
        logger.debug("Ignoring temporary/folder object %s", key)
        return None
    parsed = ObjectKey.parse(key)
    if parsed is None:
        miss = ClassificationMiss(key)
        logger.debug("%s", miss.message)
        return None
    return parsed


def route(
    event: StageEvent,
    *,
    max_auto_process_bytes: int = DEFAULT_MAX_AUTO_PROCESS_BYTES,
    force: bool = False,
) -> list[Invocation]:
    """Invocations for one creation event.

    Raw objects over ``max_auto_process_bytes`` route nowhere unless ``force``.
    """
    ref = classify(event.object_key)
    if ref is None:
        return []
    if ref.stage == Stage.RAW and event.size > max_auto_process_bytes and not force:
        logger.warning(
            "Not auto-processing %s: %d bytes exceeds %d (use a forced trigger)",
            event.object_key,
            event.size,
            max_auto_process_bytes,
        )
        return []
    return [
        Invocation(transform=name, source_key=str(ref), user_id=ref.user_id)
        for name in ROUTING_TABLE[ref.stage]
    ]


__all__ = ["DEFAULT_MAX_AUTO_PROCESS_BYTES", "ROUTING_TABLE", "classify", "is_ignored", "route"]
