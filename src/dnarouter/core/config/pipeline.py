"""Pipeline configuration: admission control, stage harness, routing, service."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AdmissionConfig(BaseModel):
    """Fleet-wide ceilings on in-flight inference calls."""

    model_config = ConfigDict(extra="ignore")

    max_concurrent: int = Field(default=8, ge=1)
    max_concurrent_per_user: int = Field(default=2, ge=1)
    # A ticket older than this is presumed leaked and reclaimed by the audit.
    ticket_lease_seconds: float = 300.0
    # How long `slot()` keeps retrying a blocked acquire before giving up.
    acquire_timeout_seconds: float = 60.0
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    # Stagger curve: min(max, base + per_active * active_global). Tunable, not a contract.
    stagger_base_seconds: float = 0.0
    stagger_per_active_seconds: float = 0.25
    stagger_max_seconds: float = 5.0
    stagger_jitter_seconds: float = 0.5


class StageConfig(BaseModel):
    """Shared harness settings for all stage transforms."""

    model_config = ConfigDict(extra="ignore")

    batch_size: int = Field(default=5, ge=1)
    inter_item_delay_seconds: float = 1.0
    inter_item_jitter_seconds: float = 2.0
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    invocation_timeout_seconds: float = 840.0
    # Preprocessing
    max_chunk_chars: int = Field(default=20 * 1024, ge=1)
    chunk_overlap_chars: int = Field(default=2 * 1024, ge=0)
    # Content sent to the inference API is truncated to this many characters.
    max_prompt_chars: int = 100_000
    persona_without_profile: Literal["defer", "partial"] = "defer"


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # "http" posts to worker endpoints; "local" runs transforms in-process.
    invoker: Literal["http", "local"] = "http"
    worker_base_url: str = "http://localhost:8080"
    invoke_timeout_seconds: float = 900.0
    # Raw objects above this size are not auto-processed (manual trigger can force).
    max_auto_process_bytes: int = 10 * 1024 * 1024


class ServiceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str = "0.0.0.0"
    port: int = 8080
