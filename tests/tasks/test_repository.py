import pytest

from hcforge.constants import StoreKey
from hcforge.infra.store import MemoryStore
from hcforge.tasks.repository import TaskRepository
from hcforge.types import TaskConfig

pytestmark = [pytest.mark.unit]


@pytest.mark.asyncio
async def test_put_persists_record_layout(store: MemoryStore):
    repository = TaskRepository(store)
    await repository.put("srv-1", TaskConfig(region="ap-southeast-1", auto_update=True))

    record = store.snapshot()[StoreKey.STARTUP_TASKS]["srv-1"]
    assert record["region"] == "ap-southeast-1"
    assert record["autoUpdate"] is True
    assert record["setupGuiRdp"] is False
    assert record["lastStatus"] == "pending"
    assert record["rdpUsername"] is None


@pytest.mark.asyncio
async def test_load_survives_restart(store: MemoryStore):
    await TaskRepository(store).put(
        "srv-1", TaskConfig(region="r1", setup_gui_rdp=True, rdp_username="hcforge123456", status="failed")
    )

    reloaded = TaskRepository(store)
    assert await reloaded.load() == 1
    config = reloaded.get("srv-1")
    assert config.rdp_username == "hcforge123456"
    assert config.status == "failed"


@pytest.mark.asyncio
async def test_load_drops_malformed_records_and_rewrites(store: MemoryStore):
    await store.set(
        StoreKey.STARTUP_TASKS,
        {
            "ok": {"region": "r1", "autoUpdate": True, "lastStatus": "pending"},
            "no-region": {"autoUpdate": True},
            "no-steps": {"region": "r1"},
            "bad-status": {"region": "r1", "autoUpdate": True, "lastStatus": "running"},
            "junk": [1, 2, 3],
        },
    )

    repository = TaskRepository(store)
    assert await repository.load() == 1
    assert "ok" in repository
    assert set(store.snapshot()[StoreKey.STARTUP_TASKS]) == {"ok"}


@pytest.mark.asyncio
async def test_load_with_nothing_stored(store: MemoryStore):
    assert await TaskRepository(store).load() == 0


@pytest.mark.asyncio
async def test_delete(store: MemoryStore):
    repository = TaskRepository(store)
    for rid, region in (("a", "r1"), ("b", "r2")):
        await repository.put(rid, TaskConfig(region=region, auto_update=True))

    assert await repository.delete("a")
    assert not await repository.delete("a")
    assert len(repository) == 1
    assert [rid for rid, _ in repository.items()] == ["b"]
