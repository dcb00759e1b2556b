"""Preprocessor: raw upload -> normalized text documents (no API call)."""

from __future__ import annotations

import logging

from dnarouter.core.types import ObjectKey, Stage, TransformName, utcnow

from .base import ItemOutcome, StageTransform, output_path, sha256_hex
from .text import chunk_text, extract_text

logger = logging.getLogger(__name__)


class Preprocessor(StageTransform):
    name = TransformName.PREPROCESSOR
    input_stage = Stage.RAW

    def output_keys(self, ref: ObjectKey, chunk_count: int) -> list[str]:
        if chunk_count == 1:
            rel = [output_path(ref.relative_path)]
        else:
            rel = [output_path(ref.relative_path, f"_chunk{i:03d}") for i in range(chunk_count)]
        return [str(ObjectKey.build(ref.user_id, Stage.PREPROCESSED, r)) for r in rel]

    async def process_item(self, ref: ObjectKey) -> ItemOutcome:
        obj = await self.read_input(ref)
        digest = sha256_hex(obj.data)
        extracted = extract_text(ref.name, obj.data)
        chunks = chunk_text(
            extracted.text, self.settings.max_chunk_chars, self.settings.chunk_overlap_chars
        )
        keys = self.output_keys(ref, len(chunks))
        if len(chunks) > 1:
            logger.info("Chunked %s into %d chunks (%d chars)", ref, len(chunks), len(extracted.text))

        written: list[str] = []
        processed_at = utcnow().isoformat()
        for index, (key, chunk) in enumerate(zip(keys, chunks)):
            doc = {
                "sourceKey": str(ref),
                "sourceDigest": digest,
                "fileName": ref.name,
                "contentType": extracted.content_type,
                "text": chunk,
                "chunkIndex": index,
                "chunkCount": len(chunks),
                "metadata": extracted.metadata,
                "processedAt": processed_at,
            }
            if await self.put_output(key, doc):
                written.append(key)
        return ItemOutcome(written=written, skipped=not written)


__all__ = ["Preprocessor"]
