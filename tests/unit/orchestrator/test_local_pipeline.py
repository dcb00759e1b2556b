"""End-to-end runs of the whole pipeline in one process."""

from __future__ import annotations

import pytest

from dnarouter.core.exceptions import UpstreamThrottled
from dnarouter.modules.stages.prompts import CATEGORIZE, PERSONA, PROFILE_METRICS, SYSTEM_MESSAGES
from dnarouter.service import build_local_pipeline, build_runtime

UPLOAD = b"date,amount,description\n2024-01-02,42.00,groceries\n"

EXPECTED = [
    "alice/categorized/export.json",
    "alice/insights/persona.json",
    "alice/preprocessed/export.json",
    "alice/profile/master.json",
    "alice/raw/export.csv",
]


@pytest.fixture
def make_pipeline(config, store, redis_provider, sleeper):
    def _make(inference):
        runtime = build_runtime(
            config, store=store, redis=redis_provider, inference=inference, sleep=sleeper
        )
        return runtime, build_local_pipeline(runtime)

    return _make


class TestLocalPipeline:
    @pytest.mark.asyncio
    async def test_upload_flows_through_every_stage(self, make_pipeline, inference, store):
        runtime, pipeline = make_pipeline(inference)

        await pipeline.upload("alice/raw/export.csv", UPLOAD)
        reports = await pipeline.drain()

        assert pipeline.errors == []
        assert await store.list("alice/") == EXPECTED
        for key in EXPECTED:
            assert store.writes_for(key) == 1, key
        assert [inference.calls_for(n) for n in (CATEGORIZE, PROFILE_METRICS, PERSONA)] == [1, 1, 1]
        # raw, preprocessed, categorized, profile, insights
        assert len(reports) == 5
        assert await runtime.admission.load() == {"global": 0, "perUser": {}}

        personas = (await store.get("alice/insights/persona.json")).json()
        assert personas["personas"]["financial"]["sources"] == ["export.csv"]
        profile = (await store.get("alice/profile/master.json")).json()
        assert profile["userProfile"]["financialMetrics"]["totalSpent"] == 42.0

    @pytest.mark.asyncio
    async def test_redelivered_events_change_nothing(self, make_pipeline, inference, store):
        _, pipeline = make_pipeline(inference)
        await pipeline.upload("alice/raw/export.csv", UPLOAD)
        await pipeline.drain()
        calls = len(inference.calls)

        for key in EXPECTED:
            await pipeline.redeliver(key)
        await pipeline.drain()

        assert pipeline.errors == []
        assert len(inference.calls) == calls
        for key in EXPECTED:
            assert store.writes_for(key) == 1, key
        profile = (await store.get("alice/profile/master.json")).json()
        assert profile["userProfile"]["financialMetrics"]["totalSpent"] == 42.0
        assert profile["fileCount"] == 1

    @pytest.mark.asyncio
    async def test_throttled_calls_are_retried(self, make_pipeline, make_inference, config, store):
        inference = make_inference(hold=0.005)
        respond = inference.responder
        throttled: list[str] = []

        def first_two_categorize_calls_throttled(prompt):
            if prompt.system == SYSTEM_MESSAGES[CATEGORIZE] and len(throttled) < 2:
                throttled.append(prompt.user)
                raise UpstreamThrottled("429")
            return respond(prompt)

        inference.responder = first_two_categorize_calls_throttled
        runtime, pipeline = make_pipeline(inference)

        await pipeline.upload("alice/raw/export.csv", UPLOAD)
        await pipeline.drain()

        assert pipeline.errors == []
        assert await store.list("alice/") == EXPECTED
        assert len(throttled) == 2
        assert inference.calls_for(CATEGORIZE) == config.stages.max_attempts == 3
        assert inference.max_in_flight <= config.admission.max_concurrent
        assert await runtime.admission.load() == {"global": 0, "perUser": {}}

    @pytest.mark.asyncio
    async def test_temporary_uploads_are_ignored(self, make_pipeline, inference, store):
        _, pipeline = make_pipeline(inference)

        await pipeline.upload("alice/raw/export.csv.tmp", UPLOAD)
        reports = await pipeline.drain()

        assert [r.invocations for r in reports] == [[]]
        assert await store.list("alice/") == ["alice/raw/export.csv.tmp"]

    @pytest.mark.asyncio
    async def test_two_users_stay_separate(self, make_pipeline, inference, store):
        _, pipeline = make_pipeline(inference)

        await pipeline.upload("alice/raw/export.csv", UPLOAD)
        await pipeline.upload("bob/raw/export.csv", UPLOAD)
        await pipeline.drain()

        assert pipeline.errors == []
        for user in ("alice", "bob"):
            assert await store.exists(f"{user}/insights/persona.json")
            profile = (await store.get(f"{user}/profile/master.json")).json()
            assert list(profile["mergedSources"]) == [f"{user}/preprocessed/export.json"]

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_collected(self, make_pipeline, make_inference, store):
        # Categorizer and ProfileBuilder both exhaust their retries.
        inference = make_inference(errors=[UpstreamThrottled("429")] * 6)
        _, pipeline = make_pipeline(inference)

        await pipeline.upload("alice/raw/export.csv", UPLOAD)
        await pipeline.drain()

        assert [e.code for e in pipeline.errors] == ["INVOCATION_ERROR"]
        assert await store.exists("alice/failures/preprocessed/export.json.json")
        assert not await store.exists("alice/insights/persona.json")
        record = (await store.get("alice/failures/preprocessed/export.json.json")).json()
        assert sorted(record["transforms"]) == ["categorizer", "profile_builder"]
