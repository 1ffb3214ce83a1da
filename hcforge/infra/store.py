"""Key-value store implementations.

MemoryStore backs tests and ephemeral consoles; JsonFileStore keeps the whole
document in one JSON file next to the user's other HC Forge state.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
from pathlib import Path
from typing import Any

from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed


class MemoryStore:
    """Dict-backed store. Values are deep-copied in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(0.05),
    retry=retry_if_exception_type(PermissionError),
    reraise=True,
)
def _replace(src: Path, dst: Path) -> None:
    # Desktop scanners and sync clients briefly lock the target on some platforms.
    os.replace(src, dst)


class JsonFileStore:
    """Single-file JSON store with atomic writes.

    The document is loaded lazily on first access. A corrupt or unreadable
    file is logged and treated as empty; the next write replaces it.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._data: dict[str, Any] | None = None
        self._flush_lock = asyncio.Lock()
        self._log = logger.bind(component="store")

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data

        self._data = {}
        if not self.path.exists():
            return self._data

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self._log.warning("Store file {path} unreadable, starting empty: {err}", path=self.path, err=e)
            return self._data

        if isinstance(raw, dict):
            self._data = raw
        else:
            self._log.warning("Store file {path} is not a JSON object, starting empty", path=self.path)
        return self._data

    def _flush(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        _replace(tmp, self.path)

    async def _write(self) -> None:
        # One writer at a time; they share the temp file.
        async with self._flush_lock:
            text = json.dumps(self._load(), indent=2, sort_keys=True)
            await asyncio.to_thread(self._flush, text)

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._load().get(key))

    async def set(self, key: str, value: Any) -> None:
        self._load()[key] = copy.deepcopy(value)
        await self._write()

    async def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            await self._write()
