import asyncio
import json
import threading
from pathlib import Path

import pytest

from hcforge.infra.store import JsonFileStore, MemoryStore

pytestmark = [pytest.mark.unit]


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = MemoryStore()
        value = {"a": [1, 2]}
        await store.set("k", value)
        value["a"].append(3)

        fetched = await store.get("k")
        fetched["a"].append(4)

        assert await store.get("k") == {"a": [1, 2]}

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_noop(self):
        store = MemoryStore({"k": 1})
        await store.delete("other")
        await store.delete("k")
        assert await store.get("k") is None


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path):
        path = tmp_path / "nested" / "store.json"
        await JsonFileStore(path).set("startupTasks.v1", {"srv-1": {"region": "r1"}})

        assert json.loads(path.read_text())["startupTasks.v1"]["srv-1"]["region"] == "r1"
        assert await JsonFileStore(path).get("startupTasks.v1") == {"srv-1": {"region": "r1"}}

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty_and_is_replaced(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        store = JsonFileStore(path)

        assert await store.get("anything") is None
        await store.set("k", True)

        assert json.loads(path.read_text()) == {"k": True}
        assert not path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_non_object_document_reads_as_empty(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2, 3]")
        assert await JsonFileStore(path).get("k") is None

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path):
        path = tmp_path / "store.json"
        store = JsonFileStore(path)
        await store.set("a", 1)
        await store.set("b", 2)
        await store.delete("a")
        assert json.loads(path.read_text()) == {"b": 2}

    @pytest.mark.asyncio
    async def test_concurrent_writes_land_in_order(self, tmp_path: Path):
        path = tmp_path / "store.json"
        store = JsonFileStore(path)

        await asyncio.gather(*(store.set(f"k{i}", i) for i in range(10)), store.delete("k0"))

        assert json.loads(path.read_text()) == {f"k{i}": i for i in range(1, 10)}
        assert not path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_writes_happen_off_the_event_loop(self, tmp_path: Path, monkeypatch):
        store = JsonFileStore(tmp_path / "store.json")
        loop_thread = threading.get_ident()
        threads: list[int] = []
        flush = store._flush

        def recording(text: str) -> None:
            threads.append(threading.get_ident())
            flush(text)

        monkeypatch.setattr(store, "_flush", recording)
        await store.set("k", 1)
        await store.delete("k")

        assert len(threads) == 2
        assert loop_thread not in threads
