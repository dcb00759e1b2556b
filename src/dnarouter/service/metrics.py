"""Read-only view of a user's pipeline state.

Counts and sizes per stage, an optional file listing and folder tree, and the
master profile. Nothing here writes to the store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from dnarouter.core.exceptions import InvalidInput
from dnarouter.core.types import Stage
from dnarouter.modules.providers.storage import ObjectStore, StoredObject
from dnarouter.modules.stages import master_profile_key
from dnarouter.modules.stages.base import FAILURES_SEGMENT

logger = logging.getLogger(__name__)


def _file_entry(obj: StoredObject, prefix: str) -> dict[str, Any]:
    return {
        "key": obj.key,
        "size": obj.size,
        "lastModified": obj.updated_at.isoformat(),
        "relativePath": obj.key[len(prefix):],
    }


def build_file_tree(objects: list[StoredObject], prefix: str) -> dict[str, Any]:
    """Nest objects under ``prefix`` into folders; folder sizes include descendants.

    Children are ordered folders first, then by name.
    """
    root: dict[str, Any] = {"name": "root", "type": "folder", "size": 0, "children": []}
    for obj in objects:
        parts = [p for p in obj.key[len(prefix):].split("/") if p]
        if not parts:
            continue
        node = root
        node["size"] += obj.size
        for part in parts[:-1]:
            folder = next(
                (c for c in node["children"] if c["type"] == "folder" and c["name"] == part),
                None,
            )
            if folder is None:
                folder = {"name": part, "type": "folder", "size": 0, "children": []}
                node["children"].append(folder)
            folder["size"] += obj.size
            node = folder
        node["children"].append(
            {
                "name": parts[-1],
                "type": "file",
                "size": obj.size,
                "key": obj.key,
                "lastModified": obj.updated_at.isoformat(),
            }
        )

    def _sort(node: dict[str, Any]) -> None:
        children = node.get("children")
        if children is None:
            return
        children.sort(key=lambda c: (c["type"] != "folder", c["name"]))
        for child in children:
            _sort(child)

    _sort(root)
    return root


async def _load_master_profile(store: ObjectStore, user_id: str) -> dict[str, Any] | None:
    obj = await store.get_optional(master_profile_key(user_id))
    if obj is None:
        return None
    try:
        doc = obj.json()
    except InvalidInput as e:
        logger.warning("Master profile for %s is unreadable: %s", user_id, e.message)
        return None
    return doc if isinstance(doc, dict) else None


async def collect_user_metrics(
    store: ObjectStore,
    user_id: str,
    *,
    stage_filter: Stage | None = None,
    summary_only: bool = False,
    skip_file_tree: bool = False,
) -> dict[str, Any]:
    """Summarize everything stored under ``{user_id}/``.

    Args:
        stage_filter: Limit the file listing to one stage (metrics always cover all).
        summary_only: Metrics only; no files, tree or profile.
        skip_file_tree: Leave out the folder tree.
    """
    if not user_id or "/" in user_id:
        raise InvalidInput(f"Invalid user id: {user_id!r}")
    prefix = f"{user_id}/"
    keys = await store.list(prefix)
    heads = await asyncio.gather(*(store.head(key) for key in keys))
    # Objects removed between list and head are dropped.
    objects = [obj for obj in heads if obj is not None]

    by_stage: dict[str, list[StoredObject]] = {stage.value: [] for stage in Stage}
    failures = 0
    for obj in objects:
        segment = obj.key[len(prefix):].split("/", 1)[0]
        if segment in by_stage:
            by_stage[segment].append(obj)
        elif segment == FAILURES_SEGMENT:
            failures += 1

    total_size = sum(obj.size for obj in objects)
    metrics: dict[str, Any] = {
        "fileCount": len(objects),
        "totalSize": total_size,
        "lastUpdated": max(obj.updated_at for obj in objects).isoformat() if objects else None,
        "failureCount": failures,
        "stageMetrics": {
            stage: {"fileCount": len(items), "totalSize": sum(o.size for o in items)}
            for stage, items in by_stage.items()
        },
    }
    payload: dict[str, Any] = {"userId": user_id, "metrics": metrics}
    if summary_only:
        return payload

    if not skip_file_tree:
        payload["fileTree"] = build_file_tree(objects, prefix)
    if stage_filter is not None:
        stage_prefix = f"{prefix}{stage_filter.value}/"
        payload["files"] = [_file_entry(o, stage_prefix) for o in by_stage[stage_filter.value]]
    else:
        payload["files"] = [_file_entry(o, prefix) for o in objects]
    payload["masterProfile"] = await _load_master_profile(store, user_id)
    logger.debug("Metrics for %s: %d objects, %d bytes", user_id, len(objects), total_size)
    return payload


__all__ = ["build_file_tree", "collect_user_metrics"]
