"""ProfileBuilder: preprocessed documents -> merged master profile.

One API call per source that is not yet merged. An invocation also picks up
the user's other unmerged preprocessed objects, up to the batch size.
"""

from __future__ import annotations

import logging

from dnarouter.core.exceptions import InvalidInput
from dnarouter.core.types import ObjectKey, Stage, TransformName

from .base import ItemOutcome, StageTransform, sha256_hex
from .profile import empty_profile, merge_profile_metrics, record_source
from .prompts import PROFILE_METRICS

logger = logging.getLogger(__name__)

MASTER_PROFILE = "master.json"


def master_profile_key(user_id: str) -> str:
    return str(ObjectKey.build(user_id, Stage.PROFILE, MASTER_PROFILE))


class ProfileBuilder(StageTransform):
    name = TransformName.PROFILE_BUILDER
    input_stage = Stage.PREPROCESSED

    async def merged_sources(self, user_id: str) -> dict[str, str]:
        obj = await self.store.get_optional(master_profile_key(user_id))
        if obj is None:
            return {}
        doc = obj.json()
        return dict(doc.get("mergedSources") or {}) if isinstance(doc, dict) else {}

    async def collect_inputs(self, refs: list[ObjectKey]) -> list[ObjectKey]:
        items = list(dict.fromkeys(refs))
        seen = {str(r) for r in items}
        for user_id in dict.fromkeys(r.user_id for r in refs):
            merged = await self.merged_sources(user_id)
            prefix = f"{user_id}/{Stage.PREPROCESSED.value}/"
            for key in await self.store.list(prefix):
                if key in seen or key in merged:
                    continue
                parsed = ObjectKey.parse(key)
                if parsed is None:
                    continue
                items.append(parsed)
                seen.add(key)
        if len(items) > len(refs):
            logger.debug("ProfileBuilder widened %d inputs to %d", len(refs), len(items))
        return items

    async def process_item(self, ref: ObjectKey) -> ItemOutcome:
        obj = await self.read_input(ref)
        digest = sha256_hex(obj.data)
        key = master_profile_key(ref.user_id)
        if (await self.merged_sources(ref.user_id)).get(str(ref)) == digest:
            logger.info("ProfileBuilder: %s already merged, skipping", ref)
            return ItemOutcome(skipped=True)

        source = obj.json()
        if not isinstance(source, dict) or not isinstance(source.get("text"), str):
            raise InvalidInput(f"{ref} is not a preprocessed document")

        prompt = await self.prompts.render(
            PROFILE_METRICS,
            fileName=ref.name,
            content=source["text"][: self.settings.max_prompt_chars],
        )
        metrics = await self.call_inference(ref.user_id, prompt)

        changed = await self.merge_aggregate(
            key,
            source_key=str(ref),
            source_digest=digest,
            empty=lambda: empty_profile(ref.user_id),
            merge=lambda doc: record_source(merge_profile_metrics(doc, metrics), ref.name),
        )
        if changed:
            return ItemOutcome(written=[key])
        return ItemOutcome(skipped=True)


__all__ = ["MASTER_PROFILE", "ProfileBuilder", "master_profile_key"]
