"""Process-level logging setup for entry points."""

from __future__ import annotations

import logging

NOISY_LOGGERS = (
    "google",
    "google.auth",
    "google.api_core",
    "httpx",
    "httpcore",
    "urllib3",
    "openai",
)


def configure_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Suppress verbose HTTP logging from client libraries
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["NOISY_LOGGERS", "configure_logging"]
