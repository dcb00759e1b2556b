"""Stage transform harness.

A transform consumes objects of one stage and writes objects of the next.
The harness owns everything that is the same for every transform:

- widening and capping the input batch
- sequential items with a jittered inter-item delay
- local retry of transient errors with exponential backoff
- failure records for permanent and exhausted-transient errors
- admission-gated inference calls
- idempotent writes (digest skip, conditional aggregate merges)
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar

from dnarouter.core.config import StageConfig
from dnarouter.core.exceptions import (
    ConfigurationError,
    DnaRouterError,
    InvalidInput,
    PreconditionFailed,
    TransientError,
)
from dnarouter.core.types import ItemFailure, ObjectKey, Stage, StageResult, TransformName, utcnow
from dnarouter.modules.models import InferenceClient, Prompt
from dnarouter.modules.providers.admission import AdmissionController
from dnarouter.modules.providers.storage import ObjectStore, StoredObject

from .prompts import PromptLibrary

logger = logging.getLogger(__name__)

FAILURES_SEGMENT = "failures"
MAX_MERGE_ATTEMPTS = 10


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def failure_key(ref: ObjectKey) -> str:
    return f"{ref.user_id}/{FAILURES_SEGMENT}/{ref.stage.value}/{ref.relative_path}.json"


def output_path(relative_path: str, suffix: str = "") -> str:
    """``dir/name.ext`` -> ``dir/name{suffix}.json``."""
    head, _, name = relative_path.rpartition("/")
    stem = name.rsplit(".", 1)[0] if "." in name[1:] else name
    return f"{head}/{stem}{suffix}.json" if head else f"{stem}{suffix}.json"


@dataclass
class ItemOutcome:
    written: list[str] = field(default_factory=list)
    skipped: bool = False


class StageTransform(ABC):
    """Base class for the four pipeline transforms."""

    name: ClassVar[TransformName]
    input_stage: ClassVar[Stage]

    def __init__(
        self,
        store: ObjectStore,
        *,
        admission: AdmissionController | None = None,
        inference: InferenceClient | None = None,
        prompts: PromptLibrary | None = None,
        settings: StageConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.admission = admission
        self.inference = inference
        self.prompts = prompts or PromptLibrary(store)
        self.settings = settings or StageConfig()
        self._sleep = sleep
        self._rng = rng

    # ---- batch --------------------------------------------------------------

    async def collect_inputs(self, refs: list[ObjectKey]) -> list[ObjectKey]:
        """Inputs this invocation should process. Override to widen the set."""
        return refs

    async def process(self, refs: list[ObjectKey]) -> StageResult:
        result = StageResult(transform=self.name)
        for ref in refs:
            if ref.stage != self.input_stage:
                raise InvalidInput(
                    f"{self.name.value} consumes {self.input_stage.value} objects, got {ref}"
                )

        items = await self.collect_inputs(refs)
        cap = self.settings.batch_size
        if len(items) > cap:
            logger.info(
                "%s: %d inputs, processing first %d this invocation", self.name.value, len(items), cap
            )
            items = items[:cap]

        for index, ref in enumerate(items):
            if index > 0:
                await self._sleep(self.inter_item_delay())
            await self._run_item(ref, result)

        logger.info(
            "%s done: outputs=%d skipped=%d failures=%d",
            self.name.value,
            len(result.outputs),
            len(result.skipped),
            len(result.failures),
        )
        return result

    def inter_item_delay(self) -> float:
        s = self.settings
        return s.inter_item_delay_seconds + s.inter_item_jitter_seconds * self._rng()

    def retry_delay(self, attempt: int) -> float:
        s = self.settings
        cap = min(s.retry_max_delay_seconds, s.retry_base_delay_seconds * (2 ** max(0, attempt - 1)))
        return cap * (0.5 + 0.5 * self._rng())

    async def _run_item(self, ref: ObjectKey, result: StageResult) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await self.process_item(ref)
            except TransientError as e:
                if attempt < self.settings.max_attempts:
                    delay = self.retry_delay(attempt)
                    logger.warning(
                        "%s: %s on %s (attempt %d/%d), retrying in %.1fs",
                        self.name.value,
                        e.code,
                        ref,
                        attempt,
                        self.settings.max_attempts,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                failure = ItemFailure(str(ref), e.code, e.message, True, attempt)
            except ConfigurationError:
                raise
            except DnaRouterError as e:
                failure = ItemFailure(str(ref), e.code, e.message, e.retryable, attempt)
            except Exception as e:
                logger.exception("%s: unexpected error on %s", self.name.value, ref)
                failure = ItemFailure(
                    str(ref), "UNEXPECTED_ERROR", f"{type(e).__name__}: {e}", False, attempt
                )
            else:
                result.outputs.extend(outcome.written)
                if outcome.skipped:
                    result.skipped.append(str(ref))
                await self.clear_failure(ref)
                return

            logger.error(
                "%s failed on %s: %s %s (retryable=%s, attempts=%d)",
                self.name.value,
                ref,
                failure.code,
                failure.message,
                failure.retryable,
                failure.attempts,
            )
            result.failures.append(failure)
            await self.record_failure(ref, failure)
            return

    @abstractmethod
    async def process_item(self, ref: ObjectKey) -> ItemOutcome:
        """Process one input object."""
        raise NotImplementedError

    # ---- inference ----------------------------------------------------------

    async def call_inference(self, user_id: str, prompt: Prompt) -> dict[str, Any]:
        """One API call, holding an admission slot for exactly its duration."""
        if self.inference is None or self.admission is None:
            raise ConfigurationError(
                f"{self.name.value} needs an inference client and an admission controller"
            )
        async with self.admission.slot(user_id):
            return await self.inference.submit(prompt)

    # ---- idempotent writes --------------------------------------------------

    async def read_input(self, ref: ObjectKey) -> StoredObject:
        return await self.store.get(str(ref))

    async def is_current(self, key: str, source_digest: str) -> bool:
        """True if ``key`` already holds output derived from these exact input bytes."""
        existing = await self.store.get_optional(key)
        if existing is None:
            return False
        try:
            doc = existing.json()
        except InvalidInput:
            return False
        return isinstance(doc, dict) and doc.get("sourceDigest") == source_digest

    async def put_output(self, key: str, doc: dict[str, Any]) -> bool:
        """Write a deterministic output unless it already records the same digest.

        Returns:
            True if this call wrote the object.
        """
        existing = await self.store.get_optional(key)
        generation = 0
        if existing is not None:
            try:
                prior = existing.json()
            except InvalidInput:
                prior = None
            if isinstance(prior, dict) and prior.get("sourceDigest") == doc.get("sourceDigest"):
                return False
            generation = existing.generation
        try:
            await self.store.put_json(key, doc, if_generation_match=generation)
        except PreconditionFailed:
            logger.info("%s: %s written concurrently, leaving it", self.name.value, key)
            return False
        return True

    async def merge_aggregate(
        self,
        key: str,
        *,
        source_key: str,
        source_digest: str,
        empty: Callable[[], dict[str, Any]],
        merge: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> bool:
        """Read-merge-conditional-write loop for aggregate documents.

        ``merge`` receives a copy of the current document and returns the new
        one. A source whose digest is already in ``mergedSources`` is a no-op.

        Returns:
            True if this call changed the document.
        """
        for attempt in range(1, MAX_MERGE_ATTEMPTS + 1):
            existing = await self.store.get_optional(key)
            doc = existing.json() if existing is not None else empty()
            if not isinstance(doc, dict):
                raise InvalidInput(f"{key} is not a JSON object")
            if (doc.get("mergedSources") or {}).get(source_key) == source_digest:
                return False

            updated = merge(copy.deepcopy(doc))
            updated.setdefault("mergedSources", {})[source_key] = source_digest
            try:
                await self.store.put_json(
                    key,
                    updated,
                    if_generation_match=existing.generation if existing is not None else 0,
                )
            except PreconditionFailed:
                logger.debug("%s: lost merge race on %s (attempt %d)", self.name.value, key, attempt)
                continue
            return True

        raise TransientError(
            f"Could not merge {source_key} into {key} after {MAX_MERGE_ATTEMPTS} attempts",
            code="AGGREGATE_CONTENTION",
        )

    async def record_failure(self, ref: ObjectKey, failure: ItemFailure) -> None:
        """Record the failure under the input object, one entry per transform.

        Two transforms consume ``preprocessed`` objects, so the record is
        merged with a conditional write rather than overwritten.
        """
        key = failure_key(ref)
        entry = {**failure.to_dict(), "recordedAt": utcnow().isoformat()}
        for _ in range(MAX_MERGE_ATTEMPTS):
            existing = await self.store.get_optional(key)
            doc: Any = {}
            if existing is not None:
                try:
                    doc = existing.json()
                except InvalidInput:
                    doc = {}
            if not isinstance(doc, dict):
                doc = {}
            doc["sourceKey"] = str(ref)
            doc.setdefault("transforms", {})[self.name.value] = entry
            try:
                await self.store.put_json(
                    key, doc, if_generation_match=existing.generation if existing is not None else 0
                )
            except PreconditionFailed:
                continue
            return
        logger.error("%s: could not record failure of %s at %s", self.name.value, ref, key)

    async def clear_failure(self, ref: ObjectKey) -> None:
        """Drop this transform's entry from the input's failure record after a success."""
        key = failure_key(ref)
        for _ in range(MAX_MERGE_ATTEMPTS):
            try:
                existing = await self.store.get_optional(key)
                if existing is None:
                    return
                doc = existing.json()
                transforms = doc.get("transforms") if isinstance(doc, dict) else None
                if not isinstance(transforms, dict) or self.name.value not in transforms:
                    return
                del transforms[self.name.value]
                await self.store.put_json(key, doc, if_generation_match=existing.generation)
            except PreconditionFailed:
                continue
            except DnaRouterError as e:
                logger.warning(
                    "%s: could not clear failure record %s: %s", self.name.value, key, e.message
                )
                return
            logger.info("%s: cleared earlier failure of %s", self.name.value, ref)
            return
        logger.warning("%s: gave up clearing failure record %s", self.name.value, key)


__all__ = [
    "FAILURES_SEGMENT",
    "ItemOutcome",
    "StageTransform",
    "failure_key",
    "output_path",
    "sha256_hex",
]
