"""Wire providers, transforms and the orchestrator from a Config."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dnarouter.core.config import Config
from dnarouter.core.exceptions import ConfigurationError
from dnarouter.core.types import TransformName
from dnarouter.modules.models import InferenceClient, OpenAIInferenceClient
from dnarouter.modules.providers import AdmissionController, RedisProvider
from dnarouter.modules.providers.storage import InMemoryObjectStore, ObjectStore, build_object_store
from dnarouter.modules.stages import StageTransform, build_transforms
from dnarouter.orchestrator import (
    HttpInvoker,
    InProcessInvoker,
    Invoker,
    LocalPipeline,
    Orchestrator,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    store: ObjectStore
    redis: RedisProvider
    admission: AdmissionController
    inference: InferenceClient
    transforms: dict[TransformName, StageTransform]
    orchestrator: Orchestrator

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        await self.inference.aclose()
        await self.redis.close()


def build_runtime(
    config: Config,
    *,
    store: ObjectStore | None = None,
    redis: RedisProvider | None = None,
    inference: InferenceClient | None = None,
    invoker: str | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> Runtime:
    """Build every component; explicit arguments replace the configured ones."""
    store = store or build_object_store(config)
    redis = redis or RedisProvider.from_config(config)
    inference = inference or OpenAIInferenceClient(config.openai)
    admission = AdmissionController(
        redis,
        config.admission,
        key_prefix=config.redis.key_prefix,
        sleep=sleep or asyncio.sleep,
    )
    transforms = build_transforms(
        store,
        admission=admission,
        inference=inference,
        settings=config.stages,
        prompts_key=config.storage.prompts_key,
        sleep=sleep,
    )

    mode = invoker or config.orchestrator.invoker
    chosen: Invoker
    if mode == "local":
        chosen = InProcessInvoker(transforms, timeout=config.stages.invocation_timeout_seconds)
    elif mode == "http":
        chosen = HttpInvoker(
            config.orchestrator.worker_base_url, timeout=config.orchestrator.invoke_timeout_seconds
        )
    else:
        raise ConfigurationError(f"Unknown invoker: {mode}")

    orchestrator = Orchestrator(
        chosen, store, max_auto_process_bytes=config.orchestrator.max_auto_process_bytes
    )
    logger.debug("Runtime built: store=%s invoker=%s", type(store).__name__, mode)
    return Runtime(
        config=config,
        store=store,
        redis=redis,
        admission=admission,
        inference=inference,
        transforms=transforms,
        orchestrator=orchestrator,
    )


def build_local_pipeline(runtime: Runtime) -> LocalPipeline:
    if not isinstance(runtime.store, InMemoryObjectStore):
        raise ConfigurationError("A local pipeline needs the in-memory object store")
    return LocalPipeline(runtime.store, runtime.orchestrator)


__all__ = ["Runtime", "build_local_pipeline", "build_runtime"]
