"""Stage transforms.

Each transform consumes objects of one stage and writes the next:

- Preprocessor: raw -> preprocessed
- Categorizer: preprocessed -> categorized
- ProfileBuilder: preprocessed -> profile/master.json
- PersonaBuilder: categorized -> insights/persona.json
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from dnarouter.core.config import StageConfig
from dnarouter.core.types import TransformName
from dnarouter.modules.models import InferenceClient
from dnarouter.modules.providers.admission import AdmissionController
from dnarouter.modules.providers.storage import ObjectStore

from .base import ItemOutcome, StageTransform, failure_key, sha256_hex
from .categorizer import Categorizer
from .persona_builder import PersonaBuilder, personas_key
from .preprocessor import Preprocessor
from .profile_builder import ProfileBuilder, master_profile_key
from .prompts import PromptLibrary

TRANSFORMS: dict[TransformName, type[StageTransform]] = {
    TransformName.PREPROCESSOR: Preprocessor,
    TransformName.CATEGORIZER: Categorizer,
    TransformName.PROFILE_BUILDER: ProfileBuilder,
    TransformName.PERSONA_BUILDER: PersonaBuilder,
}


def build_transforms(
    store: ObjectStore,
    *,
    admission: AdmissionController | None,
    inference: InferenceClient | None,
    settings: StageConfig | None = None,
    prompts_key: str = "prompt-templates/prompts.json",
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> dict[TransformName, StageTransform]:
    """Instantiate every transform over shared providers."""
    prompts = PromptLibrary(store, prompts_key)
    extra: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
    return {
        name: cls(
            store,
            admission=admission,
            inference=inference,
            prompts=prompts,
            settings=settings,
            **extra,
        )
        for name, cls in TRANSFORMS.items()
    }


__all__ = [
    "Categorizer",
    "ItemOutcome",
    "PersonaBuilder",
    "Preprocessor",
    "ProfileBuilder",
    "PromptLibrary",
    "StageTransform",
    "TRANSFORMS",
    "build_transforms",
    "failure_key",
    "master_profile_key",
    "personas_key",
    "sha256_hex",
]
