import pytest

from hcforge.infra.cache import ResourceCache
from hcforge.infra.store import MemoryStore

pytestmark = [pytest.mark.unit]


class FailingStore(MemoryStore):
    async def get(self, key):
        raise OSError("disk gone")

    async def set(self, key, value):
        raise OSError("disk gone")


class TestResourceCache:
    @pytest.mark.asyncio
    async def test_miss_returns_none(self):
        assert await ResourceCache(MemoryStore()).read("images", "r1") is None

    @pytest.mark.asyncio
    async def test_write_then_read(self):
        store = MemoryStore()
        cache = ResourceCache(store)
        written = await cache.write("flavors", "r1", [{"id": "s6.large"}])

        entry = await cache.read("flavors", "r1")

        assert entry.data == [{"id": "s6.large"}]
        assert entry.updated_at == written.updated_at
        assert "cache.flavors.r1" in store.snapshot()

    @pytest.mark.asyncio
    async def test_parent_scoped_keys(self):
        store = MemoryStore()
        cache = ResourceCache(store)
        await cache.write("subnets", "r1", ["a"], parent_id="vpc-1")

        assert await cache.read("subnets", "r1") is None
        assert (await cache.read("subnets", "r1", "vpc-1")).data == ["a"]
        assert "cache.subnets.r1.vpc-1" in store.snapshot()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            "garbage",
            {"updatedAt": "2024-01-01T00:00:00Z"},
            {"updatedAt": "yesterday", "data": []},
        ],
    )
    async def test_malformed_entries_read_as_miss(self, raw):
        store = MemoryStore({"cache.eips.r1": raw})
        assert await ResourceCache(store).read("eips", "r1") is None

    @pytest.mark.asyncio
    async def test_store_failures_are_not_fatal(self):
        cache = ResourceCache(FailingStore())
        assert await cache.read("vpcs", "r1") is None
        entry = await cache.write("vpcs", "r1", ["vpc-1"])
        assert entry.data == ["vpc-1"]

    @pytest.mark.asyncio
    async def test_load_reads_through(self):
        cache = ResourceCache(MemoryStore())
        calls = []

        async def loader():
            calls.append(1)
            return ["ecs-1"]

        first = await cache.load("ecses", "r1", loader)
        second = await cache.load("ecses", "r1", loader)
        refreshed = await cache.load("ecses", "r1", loader, refresh=True)

        assert first.data == second.data == refreshed.data == ["ecs-1"]
        assert len(calls) == 2
