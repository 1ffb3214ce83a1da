"""Protocol definitions for the external collaborators of the core.

The remote shell and the key-value store are opaque to the orchestration
logic; concrete implementations live in ``hcforge.infra.ssh`` and
``hcforge.infra.store``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable, TypeAlias

if TYPE_CHECKING:
    from hcforge.infra.bus import OutputBus
    from hcforge.types import ExecResult, Resource

ControlSignal: TypeAlias = Literal["ctrl_c", "ctrl_d", "ctrl_z", "tab", "up", "down"]

CONTROL_SEQUENCES: dict[str, str] = {
    "ctrl_c": "\x03",
    "ctrl_d": "\x04",
    "ctrl_z": "\x1a",
    "tab": "\t",
    "up": "\x1b[A",
    "down": "\x1b[B",
}

ResourceFetcher: TypeAlias = Callable[[], Awaitable[Sequence["Resource"]]]
"""Re-fetches a resource collection from the cloud API."""


# =============================================================================
# Remote Shell Protocol
# =============================================================================


@runtime_checkable
class RemoteShell(Protocol):
    """Remote command surface consumed by the session manager and orchestrator.

    Output is not returned from ``connect``/``exec``; it is pushed to
    ``events`` as ``OutputEvent`` values tagged with the session id.
    """

    @property
    def events(self) -> OutputBus: ...

    async def connect(
        self,
        session_id: str,
        host: str,
        port: int,
        username: str,
        secret: str,
    ) -> datetime:
        """Open an interactive session and return its connected-at timestamp."""
        ...

    async def exec(self, session_id: str, command: str) -> ExecResult:
        """Send a command to the interactive session."""
        ...

    async def exec_one_shot(
        self,
        session_id: str,
        host: str,
        port: int,
        username: str,
        secret: str,
        command: str,
        *,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run a command to completion on a separate, non-interactive connection.

        ``ExecResult.exit_status`` is ``None`` when the remote side never
        reported one.
        """
        ...

    async def disconnect(self, session_id: str) -> bool: ...

    async def resize(
        self,
        session_id: str,
        cols: int,
        rows: int,
        pixel_width: int = 0,
        pixel_height: int = 0,
    ) -> tuple[int, int]: ...

    async def send_control(self, session_id: str, signal: ControlSignal) -> bool: ...


# =============================================================================
# Store Protocol
# =============================================================================


@runtime_checkable
class KeyValueStore(Protocol):
    """Opaque persistent get/set store holding JSON-compatible values."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...
