"""Observability for HC Forge: loguru sink configuration."""

from .logging import (
    CONSOLE_FORMAT,
    CONTEXT_KEYS,
    FILE_FORMAT,
    LogConfig,
    LogLevel,
    _setup_logging,
    _teardown_logging,
)

__all__ = [
    "LogConfig",
    "LogLevel",
    "CONTEXT_KEYS",
    "CONSOLE_FORMAT",
    "FILE_FORMAT",
    "_setup_logging",
    "_teardown_logging",
]
