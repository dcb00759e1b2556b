"""Config layering: defaults < settings.toml < environment."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from dnarouter.core.config import Config, StageConfig


def _write_toml(tmp_path, text: str):
    path = tmp_path / "settings.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("DNAROUTER_CONFIG_PATH", "DNAROUTER_MAX_CONCURRENT", "DNAROUTER_INVOKER"):
        monkeypatch.delenv(name, raising=False)

    cfg = Config.load()

    assert cfg.admission.max_concurrent == 8
    assert cfg.stages.persona_without_profile == "defer"
    assert cfg.orchestrator.max_auto_process_bytes == 10 * 1024 * 1024
    assert cfg.loaded_from == []


def test_toml_overrides_defaults(monkeypatch, tmp_path):
    monkeypatch.delenv("DNAROUTER_MAX_CONCURRENT", raising=False)
    path = _write_toml(
        tmp_path,
        """
[admission]
max_concurrent = 4

[stages]
batch_size = 2
persona_without_profile = "partial"
""",
    )

    cfg = Config.load(path)

    assert cfg.admission.max_concurrent == 4
    assert cfg.admission.max_concurrent_per_user == 2
    assert cfg.stages.batch_size == 2
    assert cfg.stages.persona_without_profile == "partial"
    assert cfg.loaded_from == [path]


def test_env_overrides_toml(monkeypatch, tmp_path):
    path = _write_toml(tmp_path, "[admission]\nmax_concurrent = 4\n")
    monkeypatch.setenv("DNAROUTER_MAX_CONCURRENT", "12")
    monkeypatch.setenv("DNAROUTER_REDIS_URL", "redis://cache:6380/1")
    monkeypatch.setenv("DNAROUTER_DEBUG", "yes")

    cfg = Config.load(path)

    assert cfg.admission.max_concurrent == 12
    assert cfg.redis.url == "redis://cache:6380/1"
    assert cfg.debug is True


def test_config_path_from_env(monkeypatch, tmp_path):
    path = _write_toml(tmp_path, '[orchestrator]\ninvoker = "local"\n')
    monkeypatch.delenv("DNAROUTER_INVOKER", raising=False)
    monkeypatch.setenv("DNAROUTER_CONFIG_PATH", str(path))

    cfg = Config.load()

    assert cfg.orchestrator.invoker == "local"


def test_invalid_toml_keeps_defaults(monkeypatch, tmp_path):
    monkeypatch.delenv("DNAROUTER_MAX_CONCURRENT", raising=False)
    path = _write_toml(tmp_path, "[admission\nmax_concurrent = ")

    cfg = Config.load(path)

    assert cfg.admission.max_concurrent == 8


def test_redis_url_from_parts():
    cfg = Config()
    cfg.redis.host = "cache"
    cfg.redis.password = "s3cret"
    assert cfg.redis.url == "redis://:s3cret@cache:6379/0"


@pytest.mark.parametrize(
    "override",
    [{"max_chunk_chars": 0}, {"max_chunk_chars": -5}, {"chunk_overlap_chars": -1}],
)
def test_chunk_settings_are_validated(override):
    with pytest.raises(ValidationError):
        StageConfig(**override)
