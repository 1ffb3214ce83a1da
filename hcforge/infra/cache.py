"""Region-scoped resource listing cache on top of the key-value store."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, TypeAlias

from loguru import logger

from hcforge.constants import cache_key
from hcforge.infra.protocols import KeyValueStore
from hcforge.types import parse_timestamp, utcnow

CachedResource: TypeAlias = Literal["images", "flavors", "vpcs", "subnets", "eips", "evss", "ecses"]


@dataclass(frozen=True, slots=True)
class CachedEntry:
    updated_at: datetime
    data: Any


class ResourceCache:
    """Read-through / write-through cache for resource listings.

    Every failure here is non-fatal: a missing or malformed entry reads as
    "no cache", and a failed write only costs a live reload later.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._log = logger.bind(component="cache")

    async def read(
        self,
        kind: CachedResource,
        region: str,
        parent_id: str | None = None,
    ) -> CachedEntry | None:
        key = cache_key(kind, region, parent_id)
        try:
            raw = await self._store.get(key)
        except Exception as e:
            self._log.warning("Cache read failed key={key}: {err}", key=key, err=e)
            return None

        if not isinstance(raw, dict) or "data" not in raw:
            self._log.debug("Cache miss key={key}", key=key)
            return None
        updated_at = parse_timestamp(raw.get("updatedAt"))
        if updated_at is None:
            self._log.debug("Cache entry malformed key={key}", key=key)
            return None

        self._log.debug("Cache hit key={key}", key=key)
        return CachedEntry(updated_at=updated_at, data=raw["data"])

    async def write(
        self,
        kind: CachedResource,
        region: str,
        data: Any,
        parent_id: str | None = None,
    ) -> CachedEntry:
        entry = CachedEntry(updated_at=utcnow(), data=data)
        key = cache_key(kind, region, parent_id)
        try:
            await self._store.set(
                key,
                {"updatedAt": entry.updated_at.isoformat().replace("+00:00", "Z"), "data": data},
            )
            self._log.debug("Cache set key={key}", key=key)
        except Exception as e:
            self._log.warning("Cache write failed key={key}: {err}", key=key, err=e)
        return entry

    async def load(
        self,
        kind: CachedResource,
        region: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        parent_id: str | None = None,
        refresh: bool = False,
    ) -> CachedEntry:
        """Return the cached listing, or fetch it with ``loader`` and store it.

        With ``refresh=True`` the cache is bypassed and rewritten. Loader
        errors propagate since the caller asked for live data.
        """
        if not refresh:
            cached = await self.read(kind, region, parent_id)
            if cached is not None:
                return cached
        data = await loader()
        return await self.write(kind, region, data, parent_id)
