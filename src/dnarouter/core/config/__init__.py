"""Modular configuration system for dnarouter."""

from .base import (
    get_bool_env,
    get_env,
)
from .main import (
    Config,
    get_core_config,
    set_core_config,
)
from .pipeline import (
    AdmissionConfig,
    OrchestratorConfig,
    ServiceConfig,
    StageConfig,
)
from .providers import (
    OpenAIConfig,
    RedisConfig,
    StorageConfig,
)

__all__ = [
    # Main classes
    "Config",
    # Main functions
    "get_core_config",
    "set_core_config",
    # Base utilities
    "get_env",
    "get_bool_env",
    # Provider configs
    "StorageConfig",
    "RedisConfig",
    "OpenAIConfig",
    # Pipeline configs
    "AdmissionConfig",
    "StageConfig",
    "OrchestratorConfig",
    "ServiceConfig",
]
