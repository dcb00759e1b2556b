"""Shared fixtures: fakeredis-backed admission, in-memory store, scripted inference."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import fakeredis
import pytest

from dnarouter.core.config import AdmissionConfig, Config, StageConfig
from dnarouter.core.exceptions import DnaRouterError
from dnarouter.modules.models import InferenceClient, Prompt
from dnarouter.modules.providers import AdmissionController, RedisProvider
from dnarouter.modules.providers.storage import InMemoryObjectStore
from dnarouter.modules.stages.prompts import CATEGORIZE, PERSONA, PROFILE_METRICS, SYSTEM_MESSAGES


class Sleeper:
    """Records requested delays and yields briefly instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0.001)


def default_response(prompt: Prompt) -> dict[str, Any]:
    if prompt.system == SYSTEM_MESSAGES[CATEGORIZE]:
        return {
            "fileName": "export.csv",
            "fileType": "bank statement",
            "summary": "Monthly card transactions.",
            "categories": {
                "financial": {
                    "relevance": 8,
                    "summary": "Card spending",
                    "dataPoints": ["$42 groceries"],
                },
                "travel": {"relevance": 0, "summary": "none", "dataPoints": []},
            },
            "entityNames": ["Acme Bank"],
            "insights": ["Shops weekly"],
            "sensitiveInfo": True,
        }
    if prompt.system == SYSTEM_MESSAGES[PROFILE_METRICS]:
        return {
            "metrics": {
                "financial": {
                    "transactions": [{"date": "2024-01-02", "amount": 42.0, "description": "groceries"}],
                    "monthlySpending": {"2024-01": 42.0},
                    "totalSpent": 42.0,
                },
                "demographics": {"name": "Alice"},
            }
        }
    if prompt.system == SYSTEM_MESSAGES[PERSONA]:
        return {
            "personas": {
                "financial": {
                    "type": "financial",
                    "name": "Careful Spender",
                    "completeness": 30,
                    "summary": "Weekly grocery shopper",
                    "insights": ["Shops weekly"],
                    "dataPoints": ["$42 groceries"],
                    "traits": {"spendingHabits": "frugal"},
                    "sources": ["export.csv"],
                }
            }
        }
    raise AssertionError(f"unexpected prompt: {prompt.system}")


class ScriptedInference(InferenceClient):
    """Inference double.

    Args:
        responder: Builds the response for a prompt.
        errors: Raised in order by the first calls, one per call.
        hold: Seconds each call stays in flight (real sleep, to overlap calls).
    """

    def __init__(
        self,
        responder: Callable[[Prompt], dict[str, Any]] = default_response,
        *,
        errors: list[DnaRouterError] | None = None,
        hold: float = 0.0,
    ) -> None:
        self.responder = responder
        self.errors = list(errors or [])
        self.hold = hold
        self.calls: list[Prompt] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit(self, prompt: Prompt) -> dict[str, Any]:
        self.calls.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hold:
                await asyncio.sleep(self.hold)
            if self.errors:
                raise self.errors.pop(0)
            return self.responder(prompt)
        finally:
            self.in_flight -= 1

    def calls_for(self, name: str) -> int:
        return sum(1 for p in self.calls if p.system == SYSTEM_MESSAGES[name])


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def redis_provider() -> RedisProvider:
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisProvider(client=client)


@pytest.fixture
def admission_settings() -> AdmissionConfig:
    return AdmissionConfig(
        max_concurrent=3,
        max_concurrent_per_user=2,
        acquire_timeout_seconds=30,
        backoff_base_seconds=0.001,
        backoff_max_seconds=0.005,
        stagger_per_active_seconds=0.0,
        stagger_jitter_seconds=0.0,
    )


@pytest.fixture
def admission(redis_provider, admission_settings, sleeper) -> AdmissionController:
    return AdmissionController(redis_provider, admission_settings, key_prefix="test:admission", sleep=sleeper)


@pytest.fixture
def stage_settings() -> StageConfig:
    return StageConfig(
        inter_item_delay_seconds=0.0,
        inter_item_jitter_seconds=0.0,
        retry_base_delay_seconds=0.001,
        retry_max_delay_seconds=0.001,
        invocation_timeout_seconds=30,
    )


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def inference() -> ScriptedInference:
    return ScriptedInference()


@pytest.fixture
def config(admission_settings, stage_settings) -> Config:
    cfg = Config()
    cfg.storage.backend = "memory"
    cfg.admission = admission_settings
    cfg.stages = stage_settings
    cfg.orchestrator.invoker = "local"
    cfg.redis.key_prefix = "test:admission"
    return cfg


@pytest.fixture
def make_inference() -> type[ScriptedInference]:
    return ScriptedInference


@pytest.fixture
def make_transform(store, admission, stage_settings, sleeper):
    """Build a stage transform over the shared fixtures; keyword args override StageConfig."""

    def _make(cls, inference: InferenceClient | None = None, **settings: Any):
        return cls(
            store,
            admission=admission,
            inference=inference,
            settings=stage_settings.model_copy(update=settings),
            sleep=sleeper,
        )

    return _make


async def put_preprocessed(store, key: str, text: str, *, file_name: str = "export.csv") -> None:
    await store.put_json(
        key,
        {
            "sourceKey": key.replace("/preprocessed/", "/raw/"),
            "sourceDigest": "0" * 64,
            "fileName": file_name,
            "contentType": "text/csv",
            "text": text,
            "chunkIndex": 0,
            "chunkCount": 1,
            "metadata": {},
        },
    )


@pytest.fixture
def seed_preprocessed(store):
    async def _seed(key: str, text: str = "date,amount\n2024-01-02,42", **kwargs: Any) -> None:
        await put_preprocessed(store, key, text, **kwargs)

    return _seed
