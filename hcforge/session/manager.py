"""Single interactive session state machine.

Owns at most one live Session, the capped TerminalEntry buffer and the
command history. One-shot executions go through the same manager but never
touch the interactive state.

State transitions:

    disconnected -> connecting -> connected -> disconnected

Every await on the remote shell is a suspension point where another connect
or disconnect may run. A connect generation counter is bumped by each
connect and disconnect; a connect that resumes under a stale generation
tears down what it just opened and reports itself as superseded.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from enum import StrEnum

from loguru import logger

from hcforge.config import TerminalConfig
from hcforge.constants import REMOTE_CLOSED_TEXT
from hcforge.errors import (
    EndpointUnavailableError,
    ForgeError,
    MissingSecretError,
    NotConnectedError,
    RemoteCommandError,
    UnconfirmedExecutionError,
    classify_remote_failure,
    describe_failure,
    reraise_as,
)
from hcforge.infra.debounce import Debouncer
from hcforge.infra.protocols import ControlSignal, RemoteShell
from hcforge.session.sanitize import sanitize_output
from hcforge.types import (
    ExecResult,
    OutputEvent,
    Session,
    SessionTarget,
    TerminalEntry,
    TerminalKind,
    utcnow,
)


class SessionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def new_session_id(prefix: str = "ssh-") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


class CommandHistory:
    """Recency-ordered, de-duplicated command ring (most recent first)."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: list[str] = []

    def push(self, command: str) -> None:
        command = command.strip()
        if not command:
            return
        if command in self._items:
            self._items.remove(command)
        self._items.insert(0, command)
        del self._items[self._capacity :]

    @property
    def items(self) -> tuple[str, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)


class TerminalBuffer:
    """Capped buffer of sanitized terminal entries; oldest entries go first."""

    def __init__(self, max_entries: int) -> None:
        self._entries: deque[TerminalEntry] = deque(maxlen=max_entries)
        self._next_id = 1

    def append(self, kind: TerminalKind, text: str, *, sanitize: bool = True) -> TerminalEntry | None:
        if sanitize:
            text = sanitize_output(text)
        if not text.strip():
            return None
        entry = TerminalEntry(id=self._next_id, at=utcnow(), kind=kind, text=text)
        self._next_id += 1
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[TerminalEntry, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SessionManager:
    """Owns the one interactive session and its streamed output.

    Args:
        shell: Remote command surface.
        config: Terminal limits (buffer size, history size, resize debounce).
    """

    def __init__(self, shell: RemoteShell, config: TerminalConfig | None = None) -> None:
        self._shell = shell
        self._config = config or TerminalConfig()
        self._state = SessionState.DISCONNECTED
        self._session: Session | None = None
        self._pending_id: str | None = None
        self._generation = 0
        self._buffer = TerminalBuffer(self._config.max_entries)
        self._history = CommandHistory(self._config.history_size)
        self._resize = Debouncer(self._config.resize_debounce)
        self._closing: set[asyncio.Task[None]] = set()
        self._unsubscribe = shell.events.subscribe(self._on_output)
        self._log = logger.bind(component="session")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._session is not None

    @property
    def entries(self) -> tuple[TerminalEntry, ...]:
        return self._buffer.entries

    @property
    def history(self) -> tuple[str, ...]:
        return self._history.items

    def clear_terminal(self) -> None:
        self._buffer.clear()

    def _is_current(self, session_id: str) -> bool:
        return self._session is not None and self._session.session_id == session_id

    # -------------------------------------------------------------------------
    # Output ingestion
    # -------------------------------------------------------------------------

    def _on_output(self, event: OutputEvent) -> None:
        if not (self._is_current(event.session_id) or event.session_id == self._pending_id):
            return
        self._buffer.append(event.kind, event.text)
        session = self._session
        if session is not None and event.kind == "meta" and event.text == REMOTE_CLOSED_TEXT:
            if session.session_id == event.session_id:
                self._on_remote_closed(session)

    def _note(self, kind: TerminalKind, text: str) -> None:
        self._buffer.append(kind, text, sanitize=False)

    # -------------------------------------------------------------------------
    # Connect / disconnect
    # -------------------------------------------------------------------------

    async def connect(self, target: SessionTarget, secret: str) -> Session | None:
        """Open the interactive session to ``target``.

        Any existing session to a different target is disconnected silently
        first. Returns the new Session, the existing one when already
        connected to the same target, or ``None`` if a later connect or
        disconnect superseded this call while it was in flight.

        Raises:
            EndpointUnavailableError: No host is known for the target.
            MissingSecretError: The secret is empty.
            RemoteCommandError: The remote side refused or failed.
        """
        current = self._session
        if (
            current is not None
            and self._state is SessionState.CONNECTED
            and current.target == target
        ):
            return current

        if not target.host.strip():
            self._note("stderr", f"Cannot connect to {target.resource_id}: no reachable address.")
            raise EndpointUnavailableError(target.resource_id)
        if not secret:
            self._note("stderr", f"Cannot connect to {target.resource_id}: no password available.")
            raise MissingSecretError(target.resource_id)

        if current is not None or self._state is SessionState.CONNECTING:
            await self.disconnect(silent=True)

        self._generation += 1
        generation = self._generation
        session_id = new_session_id()
        log = self._log.bind(session_id=session_id, resource_id=target.resource_id)

        self._state = SessionState.CONNECTING
        self._pending_id = session_id
        log.info(f"Connecting to {target.username}@{target.host}:{target.port}")

        try:
            connected_at = await self._shell.connect(
                session_id, target.host, target.port, target.username, secret
            )
        except Exception as e:
            err = classify_remote_failure(e)
            if generation == self._generation:
                self._state = SessionState.DISCONNECTED
                self._pending_id = None
                self._note("stderr", describe_failure(err, target.host))
            log.warning(f"Connect failed: {err}")
            reraise_as(err, e)

        if generation != self._generation:
            log.info("Connect superseded while in flight; closing orphaned session")
            await self._close_quietly(session_id)
            return None

        session = Session(session_id=session_id, target=target, connected_at=connected_at)
        self._session = session
        self._pending_id = None
        self._state = SessionState.CONNECTED
        self._note("meta", f"Connected to {target.username}@{target.host}:{target.port}")
        log.info("Connected")
        return session

    async def _close_quietly(self, session_id: str) -> None:
        try:
            await self._shell.disconnect(session_id)
        except Exception as e:
            self._log.bind(session_id=session_id).debug(f"Ignoring disconnect error: {e}")

    async def disconnect(self, silent: bool = False) -> bool:
        """Tear down the interactive session.

        ``silent`` suppresses terminal entries (automatic cleanup on region
        switch or resource deletion); errors are then only logged.
        Returns True when a session was open.
        """
        self._generation += 1
        self._resize.cancel()
        session = self._session
        pending = self._pending_id
        self._session = None
        self._pending_id = None
        self._state = SessionState.DISCONNECTED

        if session is None:
            if pending is not None:
                await self._close_quietly(pending)
            return False

        log = self._log.bind(session_id=session.session_id, resource_id=session.resource_id)
        if silent:
            await self._close_quietly(session.session_id)
            log.debug("Disconnected silently")
            return True

        try:
            await self._shell.disconnect(session.session_id)
        except Exception as e:
            log.warning(f"Disconnect reported an error: {e}")
            self._note("stderr", f"Disconnect error: {e}")
        else:
            self._note("meta", f"Disconnected from {session.target.host}")
        log.info("Disconnected")
        return True

    def _drop(self, session: Session) -> None:
        self._generation += 1
        self._resize.cancel()
        if self._is_current(session.session_id):
            self._session = None
            self._state = SessionState.DISCONNECTED

    def _on_remote_closed(self, session: Session) -> None:
        self._log.bind(session_id=session.session_id, resource_id=session.resource_id).info(
            "Remote side closed the session"
        )
        self._drop(session)
        self._note("meta", f"Disconnected from {session.target.host}")
        task = asyncio.create_task(self._close_quietly(session.session_id))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _teardown_after_failure(self, session: Session, error: ForgeError) -> None:
        self._note("stderr", describe_failure(error, session.target.host))
        if self._is_current(session.session_id):
            self._drop(session)
            await self._close_quietly(session.session_id)
            self._note("meta", "Session closed after a transport failure.")

    # -------------------------------------------------------------------------
    # Interactive operations
    # -------------------------------------------------------------------------

    def _require_session(self, operation: str) -> Session:
        if not self.connected or self._session is None:
            raise NotConnectedError(operation)
        return self._session

    async def exec_interactive(self, command: str) -> ExecResult | None:
        """Send ``command`` to the interactive session.

        Blank commands are ignored. A transport failure tears the session
        down since the channel cannot be trusted to resume.
        """
        session = self._require_session("execute a command")
        command = command.strip()
        if not command:
            return None

        self._history.push(command)
        self._note("command", f"$ {command}")
        try:
            result = await self._shell.exec(session.session_id, command)
        except Exception as e:
            err = classify_remote_failure(e)
            self._log.bind(session_id=session.session_id).warning(f"exec failed: {err}")
            await self._teardown_after_failure(session, err)
            reraise_as(err, e)

        if not self._is_current(session.session_id):
            return None
        if result.stdout:
            self._buffer.append("stdout", result.stdout)
        if result.stderr:
            self._buffer.append("stderr", result.stderr)
        return result

    async def send_control(self, signal: ControlSignal) -> bool:
        session = self._require_session("send a control signal")
        try:
            return await self._shell.send_control(session.session_id, signal)
        except Exception as e:
            err = classify_remote_failure(e)
            await self._teardown_after_failure(session, err)
            reraise_as(err, e)

    def resize(self, cols: int, rows: int, pixel_width: int = 0, pixel_height: int = 0) -> None:
        """Schedule a debounced terminal resize for the current session."""
        if not self.connected or self._session is None or cols <= 0 or rows <= 0:
            return
        session_id = self._session.session_id

        async def apply() -> None:
            if not self._is_current(session_id):
                return
            await self._shell.resize(session_id, cols, rows, pixel_width, pixel_height)

        self._resize.trigger(apply)

    # -------------------------------------------------------------------------
    # One-shot
    # -------------------------------------------------------------------------

    async def exec_one_shot(
        self,
        target: SessionTarget,
        secret: str,
        command: str,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> ExecResult:
        """Run ``command`` to completion on its own connection.

        Independent of the interactive state. A missing exit status always
        raises UnconfirmedExecutionError; a non-zero one raises
        RemoteCommandError when ``check`` is set.
        """
        if not target.host.strip():
            raise EndpointUnavailableError(target.resource_id)
        if not secret:
            raise MissingSecretError(target.resource_id)

        session_id = session_id or new_session_id("oneshot-")
        log = self._log.bind(session_id=session_id, resource_id=target.resource_id)
        log.info(f"One-shot execution on {target.host}")
        try:
            result = await self._shell.exec_one_shot(
                session_id,
                target.host,
                target.port,
                target.username,
                secret,
                command,
                timeout=timeout,
            )
        except Exception as e:
            err = classify_remote_failure(e)
            log.warning(f"One-shot failed: {err}")
            reraise_as(err, e)

        if result.exit_status is None:
            log.warning("One-shot finished without an exit status")
            raise UnconfirmedExecutionError(session_id)
        if check and result.exit_status != 0:
            err = classify_remote_failure(
                RemoteCommandError(
                    f"Command exited with status {result.exit_status}",
                    exit_status=result.exit_status,
                    stderr=result.stderr or result.stdout,
                )
            )
            log.warning(f"One-shot exited with {result.exit_status}")
            raise err
        log.info(f"One-shot finished with exit status {result.exit_status}")
        return result

    async def close(self) -> None:
        """Release the bus subscription and disconnect silently."""
        self._unsubscribe()
        await self.disconnect(silent=True)
