"""Categorizer: preprocessed document -> categorized summary (one API call)."""

from __future__ import annotations

import logging
from typing import Any

from dnarouter.core.exceptions import InvalidInput, UpstreamRejected
from dnarouter.core.types import ObjectKey, Stage, TransformName, utcnow

from .base import ItemOutcome, StageTransform, sha256_hex
from .prompts import CATEGORIZE

logger = logging.getLogger(__name__)


def _relevance(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def list_field(response: dict[str, Any], field: str) -> list[Any]:
    """A list-valued reply field; missing means empty, any other shape is rejected."""
    value = response.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        raise UpstreamRejected(
            f"Reply field {field!r} is {type(value).__name__}, expected a list",
            code="UPSTREAM_BAD_SHAPE",
        )
    return list(value)


def normalize_categories(raw: Any) -> dict[str, dict[str, Any]]:
    """Keep categories with relevance > 0, with a stable shape."""
    if not isinstance(raw, dict):
        return {}
    categories: dict[str, dict[str, Any]] = {}
    for name, data in raw.items():
        if not isinstance(data, dict):
            continue
        relevance = _relevance(data.get("relevance"))
        if relevance <= 0:
            continue
        points = data.get("dataPoints")
        categories[str(name)] = {
            "relevance": relevance,
            "summary": str(data.get("summary") or ""),
            "dataPoints": list(points) if isinstance(points, list) else [],
        }
    return categories


class Categorizer(StageTransform):
    name = TransformName.CATEGORIZER
    input_stage = Stage.PREPROCESSED

    async def process_item(self, ref: ObjectKey) -> ItemOutcome:
        obj = await self.read_input(ref)
        digest = sha256_hex(obj.data)
        out_key = str(ObjectKey.build(ref.user_id, Stage.CATEGORIZED, ref.relative_path))
        if await self.is_current(out_key, digest):
            logger.info("Categorizer: %s already categorized, skipping", ref)
            return ItemOutcome(skipped=True)

        source = obj.json()
        if not isinstance(source, dict) or not isinstance(source.get("text"), str):
            raise InvalidInput(f"{ref} is not a preprocessed document")
        file_name = str(source.get("fileName") or ref.name)

        prompt = await self.prompts.render(
            CATEGORIZE,
            fileName=file_name,
            content=source["text"][: self.settings.max_prompt_chars],
        )
        response = await self.call_inference(ref.user_id, prompt)

        doc = {
            "fileName": file_name,
            "fileType": str(response.get("fileType") or "unknown"),
            "summary": str(response.get("summary") or ""),
            "categories": normalize_categories(response.get("categories")),
            "entityNames": list_field(response, "entityNames"),
            "insights": list_field(response, "insights"),
            "sensitiveInfo": bool(response.get("sensitiveInfo", False)),
            "sourceKey": str(ref),
            "sourceDigest": digest,
            "chunkIndex": source.get("chunkIndex", 0),
            "processedAt": utcnow().isoformat(),
        }
        if await self.put_output(out_key, doc):
            return ItemOutcome(written=[out_key])
        return ItemOutcome(skipped=True)


__all__ = ["Categorizer", "list_field", "normalize_categories"]
