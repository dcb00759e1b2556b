"""CLI commands, run against in-memory storage and a fake Redis."""

from __future__ import annotations

import asyncio
import json

import fakeredis
import pytest
from click.testing import CliRunner

from dnarouter.cli import cli
from dnarouter.core.config import Config
from dnarouter.modules.providers import AdmissionController, RedisProvider
from dnarouter.service import runtime as runtime_module

CSV = b"date,amount,description\n2024-01-02,42.00,groceries\n"


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


def _fake_redis(server: fakeredis.FakeServer) -> RedisProvider:
    return RedisProvider(client=fakeredis.FakeAsyncRedis(server=server, decode_responses=True))


@pytest.fixture
def offline_runtime(monkeypatch, tmp_path, store, redis_server, make_inference):
    """Commands build their runtime over the test store, a shared fake Redis and scripted inference."""
    monkeypatch.chdir(tmp_path)
    real_build = runtime_module.build_runtime

    def _build(config, **overrides):
        overrides.setdefault("store", store)
        overrides.setdefault("invoker", "local")
        overrides["redis"] = _fake_redis(redis_server)
        overrides["inference"] = make_inference()
        overrides["sleep"] = _no_sleep
        return real_build(config, **overrides)

    monkeypatch.setattr("dnarouter.service.build_runtime", _build)
    return store


def test_route_command(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ["route", "alice/preprocessed/export.json"])

    assert result.exit_code == 0, result.output
    assert [i["transform"] for i in json.loads(result.output)] == ["categorizer", "profile_builder"]


def test_route_respects_configured_size_cap(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = tmp_path / "settings.toml"
    settings.write_text("[orchestrator]\nmax_auto_process_bytes = 100\n", encoding="utf-8")

    small = CliRunner().invoke(cli, ["--config", str(settings), "route", "alice/raw/a.csv", "--size", "50"])
    large = CliRunner().invoke(cli, ["--config", str(settings), "route", "alice/raw/a.csv", "--size", "500"])

    assert json.loads(small.output)[0]["transform"] == "preprocessor"
    assert json.loads(large.output) == []


def test_route_ignores_foreign_keys(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ["route", "prompt-templates/prompts.json"])

    assert result.exit_code == 0
    assert json.loads(result.output) == []


class TestTrigger:
    def test_trigger_runs_the_preprocessor(self, offline_runtime):
        store = offline_runtime
        asyncio.run(store.put("alice/raw/export.csv", CSV))

        result = CliRunner().invoke(cli, ["trigger", "alice/raw/export.csv"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert [i["transform"] for i in report["invocations"]] == ["preprocessor"]
        assert report["errors"] == []
        assert asyncio.run(store.exists("alice/preprocessed/export.json"))

    def test_missing_object_fails(self, offline_runtime):
        result = CliRunner().invoke(cli, ["trigger", "alice/raw/missing.csv"])

        assert result.exit_code != 0
        assert "[OBJECT_NOT_FOUND]" in result.output


class TestAdmissionCommands:
    def _controller(self, redis_server, **kwargs) -> AdmissionController:
        return AdmissionController(
            _fake_redis(redis_server),
            key_prefix=Config().redis.key_prefix,
            sleep=_no_sleep,
            **kwargs,
        )

    def test_load_shows_counters(self, offline_runtime, redis_server):
        controller = self._controller(redis_server)
        asyncio.run(controller.acquire("alice"))

        result = CliRunner().invoke(cli, ["load"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"global": 1, "perUser": {"alice": 1}}

    def test_load_when_idle(self, offline_runtime):
        result = CliRunner().invoke(cli, ["load"])

        assert json.loads(result.output) == {"global": 0, "perUser": {}}

    def test_audit_reclaims_expired_tickets(self, offline_runtime, redis_server):
        # Granted at t=0, so the lease is long gone by wall-clock time.
        controller = self._controller(redis_server, clock=lambda: 0.0)
        ticket = asyncio.run(controller.acquire("alice"))

        result = CliRunner().invoke(cli, ["audit"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0] == "Reclaimed 1 leaked ticket(s)"
        assert lines[1].strip() == ticket.ticket_id
        assert json.loads(CliRunner().invoke(cli, ["load"]).output) == {"global": 0, "perUser": {}}


class TestMetricsCommand:
    def test_summary(self, offline_runtime):
        store = offline_runtime
        asyncio.run(store.put("alice/raw/export.csv", CSV))

        result = CliRunner().invoke(cli, ["metrics", "alice", "--summary-only"])

        assert result.exit_code == 0, result.output
        body = json.loads(result.output)
        assert set(body) == {"userId", "metrics"}
        assert body["metrics"]["stageMetrics"]["raw"] == {"fileCount": 1, "totalSize": len(CSV)}

    def test_stage_choice_is_validated(self, offline_runtime):
        result = CliRunner().invoke(cli, ["metrics", "alice", "--stage", "bogus"])

        assert result.exit_code == 2


def test_run_local_processes_files(offline_runtime, tmp_path):
    upload = tmp_path / "export.csv"
    upload.write_bytes(CSV)

    result = CliRunner().invoke(cli, ["run-local", str(upload), "--user", "alice"])

    assert result.exit_code == 0, result.output
    body = json.loads(result.output)
    assert body["errors"] == []
    assert body["dispatched"] == 5
    assert body["objects"] == [
        "alice/categorized/export.json",
        "alice/insights/persona.json",
        "alice/preprocessed/export.json",
        "alice/profile/master.json",
        "alice/raw/export.csv",
    ]
