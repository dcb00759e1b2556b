"""Base configuration utilities."""

from __future__ import annotations

import os

# ---- Environment access (core-only) -----------------------------------------
#
# Modules must not read `os.environ` directly. Anything that needs an
# environment variable goes through this module.

ENV_PREFIX = "DNAROUTER_"


def get_env(name: str, default: str | None = None) -> str | None:
    val = os.environ.get(name)
    if val is None:
        return default
    s = val.strip()
    return s if s else default


def get_bool_env(name: str, default: bool | None = None) -> bool | None:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def get_int_env(name: str, default: int | None = None) -> int | None:
    raw = get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_float_env(name: str, default: float | None = None) -> float | None:
    raw = get_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
