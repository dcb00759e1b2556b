"""PersonaBuilder: categorized summary -> per-category personas (one API call).

Personas are enriched with the user's master profile. Whether a missing
profile blocks the build is a policy (``stages.persona_without_profile``):

- ``defer``: raise ``ProfileNotReady`` so the item is retried, then surfaced
  for redelivery;
- ``partial``: build from the categorized data alone.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from dnarouter.core.exceptions import InvalidInput, ProfileNotReady, UpstreamRejected
from dnarouter.core.types import NotYetAvailable, ObjectKey, Ready, Stage, TransformName

from .base import ItemOutcome, StageTransform, sha256_hex
from .profile import default_persona, empty_personas, merge_persona
from .profile_builder import master_profile_key
from .prompts import PERSONA

logger = logging.getLogger(__name__)

PERSONAS = "persona.json"


def personas_key(user_id: str) -> str:
    return str(ObjectKey.build(user_id, Stage.INSIGHTS, PERSONAS))


def _personas_of(doc: dict[str, Any]) -> dict[str, Any]:
    personas = doc.get("personas")
    return personas if isinstance(personas, dict) else {}


def _persona_or_default(personas: dict[str, Any], category: str) -> dict[str, Any]:
    persona = personas.get(category)
    return persona if isinstance(persona, dict) and persona else default_persona(category)


class PersonaBuilder(StageTransform):
    name = TransformName.PERSONA_BUILDER
    input_stage = Stage.CATEGORIZED

    async def load_profile(self, user_id: str) -> Ready[dict[str, Any]] | NotYetAvailable:
        obj = await self.store.get_optional(master_profile_key(user_id))
        if obj is None:
            return NotYetAvailable("no master profile")
        doc = obj.json()
        if not isinstance(doc, dict) or not doc.get("mergedSources"):
            return NotYetAvailable("master profile has no merged sources")
        return Ready(doc.get("userProfile") or {})

    async def process_item(self, ref: ObjectKey) -> ItemOutcome:
        obj = await self.read_input(ref)
        digest = sha256_hex(obj.data)
        source = obj.json()
        if not isinstance(source, dict):
            raise InvalidInput(f"{ref} is not a categorized document")
        categories = source.get("categories")
        if not isinstance(categories, dict) or not categories:
            logger.info("PersonaBuilder: no valid categories in %s, skipping", ref)
            return ItemOutcome(skipped=True)

        key = personas_key(ref.user_id)
        current = await self.store.get_optional(key)
        current_doc = current.json() if current is not None else empty_personas(ref.user_id)
        if not isinstance(current_doc, dict):
            raise InvalidInput(f"{key} is not a JSON object")
        if (current_doc.get("mergedSources") or {}).get(str(ref)) == digest:
            logger.info("PersonaBuilder: %s already merged, skipping", ref)
            return ItemOutcome(skipped=True)

        profile: dict[str, Any] | None = None
        readiness = await self.load_profile(ref.user_id)
        if isinstance(readiness, Ready):
            profile = readiness.value
        elif self.settings.persona_without_profile == "defer":
            raise ProfileNotReady(ref.user_id)
        else:
            logger.info(
                "PersonaBuilder: building %s without profile (%s)", ref, readiness.reason
            )

        file_name = str(source.get("fileName") or ref.name)
        existing = _personas_of(current_doc)
        baseline = {cat: _persona_or_default(existing, cat) for cat in categories}

        prompt = await self.prompts.render(
            PERSONA,
            fileName=file_name,
            fileType=source.get("fileType", "unknown"),
            fileSummary=source.get("summary", ""),
            categories=json.dumps(categories, indent=2, ensure_ascii=False),
            personas=json.dumps(baseline, indent=2, ensure_ascii=False),
            profile=(
                "User Profile Information (from master profile):\n"
                + json.dumps(profile, indent=2, ensure_ascii=False)
                if profile
                else ""
            ),
        )
        response = await self.call_inference(ref.user_id, prompt)
        updates = response.get("personas")
        if updates is None:
            updates = {}
        elif not isinstance(updates, dict):
            raise UpstreamRejected(
                f"Reply field 'personas' is {type(updates).__name__}, expected an object",
                code="UPSTREAM_BAD_SHAPE",
            )

        def merge(doc: dict[str, Any]) -> dict[str, Any]:
            personas = _personas_of(doc)
            doc["personas"] = personas
            for cat in categories:
                current_persona = personas.get(cat)
                base = current_persona if isinstance(current_persona, dict) and current_persona else baseline[cat]
                personas[cat] = merge_persona(base, updates.get(cat), file_name)
            doc["lastUpdated"] = personas[next(iter(categories))]["lastUpdated"]
            return doc

        changed = await self.merge_aggregate(
            key,
            source_key=str(ref),
            source_digest=digest,
            empty=lambda: empty_personas(ref.user_id),
            merge=merge,
        )
        if changed:
            return ItemOutcome(written=[key])
        return ItemOutcome(skipped=True)


__all__ = ["PERSONAS", "PersonaBuilder", "personas_key"]
