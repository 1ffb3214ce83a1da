import pytest

from hcforge.infra.cache import ResourceCache
from hcforge.infra.store import MemoryStore
from hcforge.observability.logging import LogConfig, _setup_logging, _teardown_logging

pytestmark = [pytest.mark.unit]


@pytest.mark.asyncio
async def test_file_sink_carries_bound_context(tmp_path):
    log_file = tmp_path / "logs" / "hcforge.log"
    ids = _setup_logging(LogConfig(file=str(log_file)))
    try:
        await ResourceCache(MemoryStore()).write("ecses", "ap-southeast-1", [])
    finally:
        _teardown_logging(ids)

    text = log_file.read_text()
    assert "Cache set key=cache.ecses.ap-southeast-1" in text
    assert "DEBUG" in text


@pytest.mark.asyncio
async def test_silent_after_teardown(tmp_path):
    log_file = tmp_path / "hcforge.log"
    _teardown_logging(_setup_logging(LogConfig(file=str(log_file))))

    await ResourceCache(MemoryStore()).write("ecses", "ap-southeast-1", [])

    assert log_file.read_text() == ""
