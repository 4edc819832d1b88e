"""Logging setup for applications embedding the deobfuscator."""

from __future__ import annotations

import logging

from .config import DeobfuscatorConfig

__all__ = [
    "LOG_FORMAT",
    "resolve_level",
    "setup_logging",
]

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def resolve_level(value: str | int | None) -> int:
    """Map a level name (or number) to a logging level.

    Unknown names fall back to ``INFO`` rather than raising.
    """

    if isinstance(value, int):
        return value
    if not value:
        return logging.INFO
    return _LEVELS.get(value.strip().lower(), logging.INFO)


def setup_logging(level: str | int | None = None, config: DeobfuscatorConfig | None = None) -> None:
    """Setup logging configuration.

    An explicit ``level`` wins; otherwise ``config.log_level`` is used, with
    the config read from the environment when none is given.
    """

    if level is None:
        level = (config or DeobfuscatorConfig.from_env()).log_level
    logging.basicConfig(
        level=resolve_level(level),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    LOG.debug("Logging setup complete.")
