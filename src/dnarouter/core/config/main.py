"""Main configuration class that combines all config modules."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .base import ENV_PREFIX, get_bool_env, get_env, get_float_env, get_int_env
from .pipeline import AdmissionConfig, OrchestratorConfig, ServiceConfig, StageConfig
from .providers import OpenAIConfig, RedisConfig, StorageConfig

logger = logging.getLogger(__name__)

DEFAULT_TOML_NAME = "settings.toml"


class Config(BaseModel):
    """Main configuration class for dnarouter.

    Configuration is loaded from multiple sources in priority order:
    1. Environment variables
    2. TOML configuration file
    3. Default values
    """

    model_config = ConfigDict(extra="ignore")

    # Core settings
    debug: bool = False
    log_level: str = "INFO"

    # Provider configurations
    storage: StorageConfig = Field(default_factory=StorageConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)

    # Pipeline
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    stages: StageConfig = Field(default_factory=StageConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)

    # Internal state
    loaded_from: list[Path] = Field(default_factory=list)

    @classmethod
    def load(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration from files and environment."""
        load_dotenv()

        config = cls()

        env_path = get_env(f"{ENV_PREFIX}CONFIG_PATH")
        toml_path = (
            Path(config_path)
            if config_path
            else (Path(env_path).resolve() if env_path else Path.cwd() / DEFAULT_TOML_NAME)
        )
        if toml_path.exists():
            try:
                with open(toml_path, "rb") as f:
                    toml_data = tomllib.load(f)

                config_dict = config.model_dump()
                for section, values in toml_data.items():
                    if isinstance(values, dict) and isinstance(config_dict.get(section), dict):
                        config_dict[section].update(values)
                    else:
                        config_dict[section] = values
                config = cls.model_validate(config_dict)
                config.loaded_from.append(toml_path)
            except Exception as e:
                logger.warning("Failed to load TOML config from %s: %s", toml_path, e)

        config._apply_env_overrides()
        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to config."""
        p = ENV_PREFIX

        # Storage
        if v := get_env(f"{p}STORAGE_BACKEND"):
            self.storage.backend = v  # type: ignore[assignment]
        if v := get_env(f"{p}BUCKET"):
            self.storage.bucket = v
        if v := get_env(f"{p}GCP_PROJECT"):
            self.storage.project_id = v

        # Redis
        if v := get_env(f"{p}REDIS_URL"):
            self.redis.url_override = v
        if v := get_env(f"{p}REDIS_HOST"):
            self.redis.host = v
        if (port := get_int_env(f"{p}REDIS_PORT")) is not None:
            self.redis.port = port
        if v := get_env(f"{p}REDIS_PASSWORD"):
            self.redis.password = v
        if v := get_env(f"{p}ADMISSION_PREFIX"):
            self.redis.key_prefix = v

        # OpenAI
        if v := get_env("OPENAI_API_KEY"):
            self.openai.api_key = v
        if v := get_env("OPENAI_ORGANIZATION"):
            self.openai.organization = v
        if v := get_env(f"{p}OPENAI_MODEL"):
            self.openai.model = v

        # Admission
        if (n := get_int_env(f"{p}MAX_CONCURRENT")) is not None:
            self.admission.max_concurrent = n
        if (n := get_int_env(f"{p}MAX_CONCURRENT_PER_USER")) is not None:
            self.admission.max_concurrent_per_user = n
        if (f := get_float_env(f"{p}TICKET_LEASE_SECONDS")) is not None:
            self.admission.ticket_lease_seconds = f

        # Stages
        if (n := get_int_env(f"{p}BATCH_SIZE")) is not None:
            self.stages.batch_size = n
        if (n := get_int_env(f"{p}MAX_ATTEMPTS")) is not None:
            self.stages.max_attempts = n
        if (f := get_float_env(f"{p}INVOCATION_TIMEOUT_SECONDS")) is not None:
            self.stages.invocation_timeout_seconds = f
        if v := get_env(f"{p}PERSONA_WITHOUT_PROFILE"):
            self.stages.persona_without_profile = v  # type: ignore[assignment]

        # Orchestrator
        if v := get_env(f"{p}INVOKER"):
            self.orchestrator.invoker = v  # type: ignore[assignment]
        if v := get_env(f"{p}WORKER_BASE_URL"):
            self.orchestrator.worker_base_url = v

        # Debug/Logging
        if (debug_val := get_bool_env(f"{p}DEBUG")) is not None:
            self.debug = debug_val
        if log_level := get_env(f"{p}LOG_LEVEL"):
            self.log_level = log_level


# ---- Global config management ----

_GLOBAL_CONFIG: Config | None = None


def get_core_config() -> Config:
    """Return the process-global config."""
    global _GLOBAL_CONFIG
    if _GLOBAL_CONFIG is None:
        _GLOBAL_CONFIG = Config.load()
    return _GLOBAL_CONFIG


def set_core_config(config: Config) -> None:
    """Set the global config."""
    global _GLOBAL_CONFIG
    _GLOBAL_CONFIG = config
