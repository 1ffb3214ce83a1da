import asyncio

import pytest

from hcforge.infra.bus import OutputBus
from hcforge.infra.debounce import Debouncer
from hcforge.types import OutputEvent

pytestmark = [pytest.mark.unit]


class TestOutputBus:
    def test_filters_by_session_and_prefix(self):
        bus = OutputBus()
        everything, exact, prefixed = [], [], []
        bus.subscribe(everything.append)
        bus.subscribe(exact.append, session_id="ssh-1")
        bus.subscribe(prefixed.append, prefix="startup-")

        for sid in ("ssh-1", "ssh-2", "startup-srv-1-1700000000000"):
            bus.emit(OutputEvent(session_id=sid, kind="stdout", text="x"))

        assert [e.session_id for e in everything] == ["ssh-1", "ssh-2", "startup-srv-1-1700000000000"]
        assert [e.session_id for e in exact] == ["ssh-1"]
        assert [e.session_id for e in prefixed] == ["startup-srv-1-1700000000000"]

    def test_unsubscribe(self):
        bus = OutputBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        bus.emit(OutputEvent(session_id="s", kind="meta", text="x"))
        assert seen == []
        assert len(bus) == 0

    def test_decorator(self):
        bus = OutputBus()
        seen = []

        @bus.on(prefix="startup-")
        def handler(event):
            seen.append(event.text)

        bus.emit(OutputEvent(session_id="startup-a", kind="stdout", text="hi"))
        assert seen == ["hi"]


class TestDebouncer:
    @pytest.mark.asyncio
    async def test_only_latest_call_runs(self):
        debouncer = Debouncer(0.01)
        ran = []

        def call(n):
            async def run():
                ran.append(n)

            return run

        for n in range(5):
            debouncer.trigger(call(n))
        await asyncio.sleep(0.05)

        assert ran == [4]
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_cancel_discards_pending(self):
        debouncer = Debouncer(0.01)
        ran = []

        async def run():
            ran.append(1)

        debouncer.trigger(run)
        debouncer.cancel()
        await asyncio.sleep(0.03)
        assert ran == []

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self):
        debouncer = Debouncer(0)

        async def boom():
            raise RuntimeError("resize failed")

        task = debouncer.trigger(boom)
        await task
        assert task.exception() is None
