"""Core: configuration, exceptions and pipeline types."""

from .config import Config, get_core_config, set_core_config
from .exceptions import DnaRouterError
from .types import ObjectKey, Stage, StageEvent, TransformName

__all__ = [
    "Config",
    "DnaRouterError",
    "ObjectKey",
    "Stage",
    "StageEvent",
    "TransformName",
    "get_core_config",
    "set_core_config",
]
