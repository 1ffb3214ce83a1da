"""Generation-counted debouncing for bursty async requests.

Example:
    resize = Debouncer(delay=0.12)

    # Only the last call within 120ms reaches the remote side
    resize.trigger(lambda: shell.resize(sid, 80, 24))
    resize.trigger(lambda: shell.resize(sid, 120, 40))
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger


class Debouncer:
    """Collapses bursts of calls into the most recent one.

    Each ``trigger`` bumps a generation counter and cancels the pending
    timer. When a timer fires it checks that its generation is still the
    latest before running, so a superseded callback never acts even if its
    cancellation raced with the wake-up.

    Args:
        delay: Quiet period in seconds before the latest call runs.
    """

    def __init__(self, delay: float) -> None:
        self._delay = delay
        self._generation = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def trigger(self, callback: Callable[[], Awaitable[object]]) -> asyncio.Task[None]:
        self._generation += 1
        generation = self._generation
        if self._task is not None and not self._task.done():
            self._task.cancel()

        async def fire() -> None:
            await asyncio.sleep(self._delay)
            if not self.is_current(generation):
                return
            try:
                await callback()
            except Exception as e:
                logger.bind(component="debounce").warning(f"Debounced call failed: {e}")

        self._task = asyncio.create_task(fire())
        return self._task

    def cancel(self) -> None:
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
