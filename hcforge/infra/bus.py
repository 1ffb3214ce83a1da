"""Minimal fan-out bus for remote output events."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias

from hcforge.types import OutputEvent

Handler: TypeAlias = Callable[[OutputEvent], Any]


class OutputBus:
    """Delivers every OutputEvent to the handlers whose session filter matches.

    A handler registered with ``session_id`` only sees that session; one
    registered with ``prefix`` sees every session id starting with it; one
    registered with neither sees everything.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[str | None, str | None, Handler]] = []

    def subscribe(
        self,
        handler: Handler,
        *,
        session_id: str | None = None,
        prefix: str | None = None,
    ) -> Callable[[], None]:
        """Register handler and return a callable that removes it."""
        entry = (session_id, prefix, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def on(self, *, prefix: str | None = None) -> Callable[[Handler], Handler]:
        """Decorator form of ``subscribe``."""

        def decorator(fn: Handler) -> Handler:
            self.subscribe(fn, prefix=prefix)
            return fn

        return decorator

    def emit(self, event: OutputEvent) -> None:
        for session_id, prefix, handler in list(self._handlers):
            if session_id is not None and event.session_id != session_id:
                continue
            if prefix is not None and not event.session_id.startswith(prefix):
                continue
            handler(event)

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)
