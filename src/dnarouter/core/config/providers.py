"""Provider configurations for external services."""

from typing import Literal

from pydantic import BaseModel, ConfigDict


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # "gcs" for Google Cloud Storage, "memory" for local runs.
    backend: Literal["gcs", "memory"] = "gcs"
    bucket: str = ""
    project_id: str = ""
    # Key of the optional prompt template override document.
    prompts_key: str = "prompt-templates/prompts.json"


class RedisConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str | None = None
    # Full URL wins over host/port/db when set.
    url_override: str = ""
    key_prefix: str = "dnarouter:admission"

    @property
    def url(self) -> str:
        """Generate Redis URL from config."""
        if self.url_override:
            return self.url_override
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    api_key: str = ""
    organization: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 4000
    request_timeout_seconds: float = 60.0
