"""Loguru sinks for HC Forge.

The library stays silent until the console installs sinks. Every record
carries the bound context (component, region, resource, session, watch)
rendered as a trailing ``[key=value ...]`` block, so a single log file can
be filtered per server or per session.

Example:
    ids = _setup_logging(LogConfig(level="DEBUG", console=True))
    logger.bind(component="tasks", resource_id="srv-1").info("Startup task started")
    _teardown_logging(ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from loguru import logger

from hcforge.constants import DEFAULT_LOG_FILE

logger.disable("hcforge")

LogLevel: TypeAlias = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

CONTEXT_KEYS: tuple[str, ...] = ("component", "region", "resource_id", "session_id", "watch")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level.name:<7}</level> "
    "<magenta>{extra[component]:<8}</magenta> "
    "<level>{message}</level>"
    "<dim>{extra[context]}</dim>"
)

FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level.name:<7} {module}:{line} {message}{extra[context]}"


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where and how much the console logs.

    Attributes:
        level: Minimum level for the stderr sink.
        file: Log file path; an empty string disables the file sink.
        console: Also log to stderr.
        rotation: Size or age at which the file rotates.
        retention: Rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str = DEFAULT_LOG_FILE
    console: bool = False
    rotation: str = "10 MB"
    retention: int = 5


def _context(extra: dict[str, Any]) -> str:
    pairs = " ".join(f"{key}={extra[key]}" for key in CONTEXT_KEYS[1:] if extra.get(key) is not None)
    return f" [{pairs}]" if pairs else ""


def _patch(record: Any) -> None:
    extra = record["extra"]
    extra.setdefault("component", "-")
    extra["context"] = _context(extra)


def _setup_logging(config: LogConfig) -> list[int]:
    """Install the configured sinks; returns their handler ids."""
    logger.remove()
    logger.configure(patcher=_patch)
    logger.enable("hcforge")

    ids: list[int] = []
    if config.console:
        ids.append(logger.add(sys.stderr, level=config.level, format=CONSOLE_FORMAT, filter="hcforge"))
    if config.file:
        path = Path(config.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        ids.append(
            logger.add(
                path,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,
                filter="hcforge",
            )
        )
    return ids


def _teardown_logging(handler_ids: list[int]) -> None:
    """Remove the sinks installed by ``_setup_logging`` and go silent again."""
    for handler_id in handler_ids:
        logger.remove(handler_id)
    logger.disable("hcforge")
