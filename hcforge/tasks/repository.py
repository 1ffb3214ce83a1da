"""Persisted startup task configurations (``startupTasks.v1``)."""

from __future__ import annotations

from collections.abc import Iterator

from loguru import logger

from hcforge.constants import StoreKey
from hcforge.infra.protocols import KeyValueStore
from hcforge.types import TaskConfig


class TaskRepository:
    """Map of resource id to TaskConfig, mirrored to the key-value store."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._configs: dict[str, TaskConfig] = {}
        self._log = logger.bind(component="tasks")

    async def load(self) -> int:
        """Load persisted configs record by record, dropping the malformed ones."""
        raw = await self._store.get(StoreKey.STARTUP_TASKS)
        self._configs.clear()
        if not isinstance(raw, dict):
            return 0

        dropped = 0
        for resource_id, value in raw.items():
            config = TaskConfig.from_record(value)
            if not isinstance(resource_id, str) or not resource_id or config is None:
                dropped += 1
                continue
            self._configs[resource_id] = config
        if dropped:
            self._log.warning(f"Dropped {dropped} malformed startup task record(s)")
            await self._persist()
        return len(self._configs)

    async def _persist(self) -> None:
        await self._store.set(
            StoreKey.STARTUP_TASKS,
            {rid: config.to_record() for rid, config in self._configs.items()},
        )

    def get(self, resource_id: str) -> TaskConfig | None:
        return self._configs.get(resource_id)

    async def put(self, resource_id: str, config: TaskConfig) -> None:
        self._configs[resource_id] = config
        await self._persist()

    async def delete(self, resource_id: str) -> bool:
        if self._configs.pop(resource_id, None) is None:
            return False
        await self._persist()
        return True

    def items(self) -> Iterator[tuple[str, TaskConfig]]:
        return iter(list(self._configs.items()))

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._configs

    def __len__(self) -> int:
        return len(self._configs)
