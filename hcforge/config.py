"""TOML-based console configuration.

Loads ~/.hcforge/defaults.toml (global) and hcforge.toml (project),
merges them, and resolves the result into a frozen ForgeConfig.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, TypeAlias

from hcforge import constants as c
from hcforge.errors import ConfigurationError
from hcforge.observability.logging import LogConfig

RawConfig: TypeAlias = dict[str, Any]

GLOBAL_CONFIG_PATH = c.FORGE_HOME / "defaults.toml"
PROJECT_CONFIG_NAME = "hcforge.toml"


@dataclass(frozen=True, slots=True)
class TerminalConfig:
    max_entries: int = c.TERMINAL_MAX_ENTRIES
    history_size: int = c.HISTORY_SIZE
    resize_debounce: float = c.RESIZE_DEBOUNCE_SECONDS
    default_port: int = c.DEFAULT_SSH_PORT
    default_username: str = c.DEFAULT_SSH_USERNAME


@dataclass(frozen=True, slots=True)
class WatchConfig:
    initial_delay: float = c.WATCH_INITIAL_DELAY
    interval: float = c.WATCH_INTERVAL
    max_attempts: int = c.WATCH_MAX_ATTEMPTS


@dataclass(frozen=True, slots=True)
class TasksConfig:
    one_shot_timeout: float = c.ONE_SHOT_TIMEOUT
    session_prefix: str = c.STARTUP_SESSION_PREFIX


@dataclass(frozen=True, slots=True)
class StoreConfig:
    path: Path = c.DEFAULT_STORE_PATH


@dataclass(frozen=True, slots=True)
class ForgeConfig:
    """Resolved console configuration.

    Attributes:
        terminal: Interactive session limits and defaults.
        watch: Operation watcher timings.
        tasks: Startup task execution settings.
        store: Location of the persistent store.
        log: Logging configuration.
    """

    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    log: LogConfig = field(default_factory=LogConfig)


_SECTIONS: dict[str, type] = {
    "terminal": TerminalConfig,
    "watch": WatchConfig,
    "tasks": TasksConfig,
    "store": StoreConfig,
    "log": LogConfig,
}


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)
    return _deep_merge(global_cfg, project_cfg)


def _build_section(name: str, raw: Any) -> Any:
    cls = _SECTIONS[name]
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Section [{name}] must be a table")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{name}]: {', '.join(unknown)}. Valid: {', '.join(sorted(known))}"
        )

    values = dict(raw)
    if name == "store" and "path" in values:
        values["path"] = Path(values["path"]).expanduser()
    return cls(**values)


def build_config(raw: RawConfig) -> ForgeConfig:
    unknown = sorted(set(raw) - set(_SECTIONS))
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration sections: {', '.join(unknown)}. "
            f"Valid: {', '.join(_SECTIONS)}"
        )
    sections = {name: _build_section(name, value) for name, value in raw.items()}
    return ForgeConfig(**sections)


def resolve_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ForgeConfig:
    return build_config(load_config(project_dir=project_dir, global_path=global_path))
