"""Shared stage harness: retries, failure records, batching, idempotent writes."""

from __future__ import annotations

import asyncio

import pytest

from dnarouter.core.exceptions import (
    ConfigurationError,
    InvalidInput,
    PreconditionFailed,
    TransientError,
    UpstreamRejected,
    UpstreamThrottled,
)
from dnarouter.core.types import ObjectKey
from dnarouter.modules.providers.storage import InMemoryObjectStore
from dnarouter.modules.stages import Categorizer, ProfileBuilder, failure_key
from dnarouter.modules.stages.base import output_path
from dnarouter.modules.stages.prompts import CATEGORIZE

SOURCE = "alice/preprocessed/export.json"


def _ref(key: str = SOURCE) -> ObjectKey:
    return ObjectKey.parse(key)


class _ContendedStore(InMemoryObjectStore):
    """Every conditional write to ``key`` loses the race."""

    def __init__(self, key: str) -> None:
        super().__init__()
        self.contended = key
        self.attempts = 0

    async def put(self, key, data, *, content_type="application/octet-stream", if_generation_match=None):
        if key == self.contended and if_generation_match is not None:
            self.attempts += 1
            raise PreconditionFailed(key, if_generation_match)
        return await super().put(
            key, data, content_type=content_type, if_generation_match=if_generation_match
        )


def test_output_path():
    assert output_path("export.csv") == "export.json"
    assert output_path("2024/jan/export.csv", "_chunk001") == "2024/jan/export_chunk001.json"
    assert output_path(".hidden") == ".hidden.json"


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_errors_retry_then_succeed(
        self, make_transform, make_inference, seed_preprocessed, admission, sleeper
    ):
        await seed_preprocessed(SOURCE)
        inference = make_inference(errors=[UpstreamThrottled("429"), UpstreamThrottled("429")])
        transform = make_transform(Categorizer, inference, max_attempts=3)

        result = await transform.process([_ref()])

        assert result.failures == []
        assert result.outputs == ["alice/categorized/export.json"]
        assert inference.calls_for(CATEGORIZE) == 3
        assert len(sleeper.calls) >= 2
        assert await admission.load() == {"global": 0, "perUser": {}}

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_recorded(
        self, make_transform, make_inference, seed_preprocessed, store, admission
    ):
        await seed_preprocessed(SOURCE)
        inference = make_inference(errors=[UpstreamThrottled("429")] * 3)
        transform = make_transform(Categorizer, inference, max_attempts=3)

        result = await transform.process([_ref()])

        assert result.outputs == []
        [failure] = result.failures
        assert (failure.code, failure.retryable, failure.attempts) == ("UPSTREAM_THROTTLED", True, 3)
        assert result.has_retryable_failures
        record = (await store.get(failure_key(_ref()))).json()
        assert record["sourceKey"] == SOURCE
        assert record["transforms"]["categorizer"]["code"] == "UPSTREAM_THROTTLED"
        assert failure_key(_ref()) == "alice/failures/preprocessed/export.json.json"
        assert await admission.load() == {"global": 0, "perUser": {}}

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(
        self, make_transform, make_inference, seed_preprocessed, store
    ):
        await seed_preprocessed(SOURCE)
        inference = make_inference(errors=[UpstreamRejected("bad request")])
        transform = make_transform(Categorizer, inference)

        result = await transform.process([_ref()])

        assert len(inference.calls) == 1
        assert [(f.code, f.retryable) for f in result.failures] == [("UPSTREAM_REJECTED", False)]
        assert not result.has_retryable_failures
        assert await store.exists(failure_key(_ref()))
        assert not await store.exists("alice/categorized/export.json")

    @pytest.mark.asyncio
    async def test_missing_input_is_a_failure_not_a_crash(self, make_transform, inference):
        transform = make_transform(Categorizer, inference)

        result = await transform.process([_ref("alice/preprocessed/gone.json")])

        assert [f.code for f in result.failures] == ["OBJECT_NOT_FOUND"]

    @pytest.mark.asyncio
    async def test_configuration_errors_propagate(self, make_transform, seed_preprocessed):
        await seed_preprocessed(SOURCE)
        transform = make_transform(Categorizer, None)

        with pytest.raises(ConfigurationError):
            await transform.process([_ref()])

    @pytest.mark.asyncio
    async def test_wrong_input_stage(self, make_transform, inference):
        transform = make_transform(Categorizer, inference)

        with pytest.raises(InvalidInput):
            await transform.process([_ref("alice/raw/export.csv")])


class TestBatching:
    @pytest.mark.asyncio
    async def test_batch_cap_and_inter_item_delay(
        self, make_transform, inference, seed_preprocessed, sleeper
    ):
        for name in ("a", "b", "c"):
            await seed_preprocessed(f"alice/preprocessed/{name}.json")
        transform = make_transform(
            ProfileBuilder,
            inference,
            batch_size=2,
            inter_item_delay_seconds=1.5,
            inter_item_jitter_seconds=0,
        )

        result = await transform.process([_ref("alice/preprocessed/b.json")])

        assert len(inference.calls) == 2
        assert result.outputs == ["alice/profile/master.json"] * 2
        assert sleeper.calls.count(1.5) == 1


class TestAggregates:
    @pytest.mark.asyncio
    async def test_contention_gives_up_after_bounded_attempts(self, admission, sleeper, stage_settings):
        store = _ContendedStore("alice/profile/master.json")
        transform = ProfileBuilder(store, admission=admission, settings=stage_settings, sleep=sleeper)

        with pytest.raises(TransientError) as info:
            await transform.merge_aggregate(
                "alice/profile/master.json",
                source_key=SOURCE,
                source_digest="d1",
                empty=dict,
                merge=lambda doc: doc,
            )

        assert info.value.code == "AGGREGATE_CONTENTION"
        assert store.attempts == 10

    @pytest.mark.asyncio
    async def test_concurrent_merges_both_land(self, make_transform, store):
        transform = make_transform(ProfileBuilder)

        def add(name):
            def merge(doc):
                doc.setdefault("items", []).append(name)
                return doc

            return merge

        changed = await asyncio.gather(
            *(
                transform.merge_aggregate(
                    "alice/profile/master.json",
                    source_key=f"src/{n}",
                    source_digest=n,
                    empty=dict,
                    merge=add(n),
                )
                for n in ("a", "b", "c")
            )
        )

        doc = (await store.get("alice/profile/master.json")).json()
        assert changed == [True, True, True]
        assert sorted(doc["items"]) == ["a", "b", "c"]
        assert doc["mergedSources"] == {"src/a": "a", "src/b": "b", "src/c": "c"}

    @pytest.mark.asyncio
    async def test_same_digest_merges_once(self, make_transform, store):
        transform = make_transform(ProfileBuilder)
        kwargs = dict(source_key="src/a", source_digest="d1", empty=dict, merge=lambda d: d)

        assert await transform.merge_aggregate("alice/profile/master.json", **kwargs) is True
        assert await transform.merge_aggregate("alice/profile/master.json", **kwargs) is False
        assert store.writes_for("alice/profile/master.json") == 1


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_and_batch_continues(
        self, make_transform, make_inference, seed_preprocessed, store, admission
    ):
        await seed_preprocessed("alice/preprocessed/bad.json", file_name="bad.csv")
        await seed_preprocessed("alice/preprocessed/good.json", file_name="good.csv")
        inference = make_inference()
        respond = inference.responder

        def responder(prompt):
            if "File: bad.csv" in prompt.user:
                raise KeyError("categories")
            return respond(prompt)

        inference.responder = responder
        transform = make_transform(Categorizer, inference)

        result = await transform.process(
            [_ref("alice/preprocessed/bad.json"), _ref("alice/preprocessed/good.json")]
        )

        [failure] = result.failures
        assert (failure.code, failure.retryable, failure.attempts) == ("UNEXPECTED_ERROR", False, 1)
        assert failure.message.startswith("KeyError")
        assert result.outputs == ["alice/categorized/good.json"]
        record = (await store.get(failure_key(_ref("alice/preprocessed/bad.json")))).json()
        assert record["transforms"]["categorizer"]["code"] == "UNEXPECTED_ERROR"
        assert await admission.load() == {"global": 0, "perUser": {}}


class TestFailureRecords:
    @pytest.mark.asyncio
    async def test_success_clears_only_its_own_entry(
        self, make_transform, make_inference, seed_preprocessed, store
    ):
        await seed_preprocessed(SOURCE)
        await make_transform(
            Categorizer, make_inference(errors=[UpstreamRejected("bad request")])
        ).process([_ref()])
        await make_transform(
            ProfileBuilder, make_inference(errors=[UpstreamRejected("bad request")])
        ).process([_ref()])
        record = (await store.get(failure_key(_ref()))).json()
        assert sorted(record["transforms"]) == ["categorizer", "profile_builder"]

        result = await make_transform(Categorizer, make_inference()).process([_ref()])

        assert result.failures == []
        record = (await store.get(failure_key(_ref()))).json()
        assert list(record["transforms"]) == ["profile_builder"]
        assert record["sourceKey"] == SOURCE

    @pytest.mark.asyncio
    async def test_success_without_record_writes_nothing(
        self, make_transform, inference, seed_preprocessed, store
    ):
        await seed_preprocessed(SOURCE)

        await make_transform(Categorizer, inference).process([_ref()])

        assert not await store.exists(failure_key(_ref()))
