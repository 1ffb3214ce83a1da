"""AsyncSSH-based remote shell.

Implements the RemoteShell protocol: one PTY-backed interactive process per
interactive session id, plus independent one-shot connections that run a
command to completion. All output is pushed to the OutputBus rather than
returned.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime

import asyncssh
from loguru import logger

from hcforge.constants import REMOTE_CLOSED_TEXT
from hcforge.errors import AuthenticationFailedError, NotConnectedError, RemoteCommandError
from hcforge.infra.bus import OutputBus
from hcforge.infra.protocols import CONTROL_SEQUENCES, ControlSignal
from hcforge.types import ExecResult, OutputEvent, OutputKind, utcnow

TERM_TYPE = "xterm-256color"
DEFAULT_TERM_SIZE = (120, 32)
READ_CHUNK = 4096


def _preview(command: str) -> str:
    return command[:80] + "..." if len(command) > 80 else command


@dataclass
class _InteractiveChannel:
    conn: asyncssh.SSHClientConnection
    process: asyncssh.SSHClientProcess[str]
    readers: list[asyncio.Task[None]] = field(default_factory=list)


@dataclass
class AsyncSSHShell:
    """RemoteShell over asyncssh using password authentication.

    Example:
        >>> shell = AsyncSSHShell()
        >>> shell.events.subscribe(print)
        >>> await shell.connect("s-1", "10.0.0.1", 22, "root", "secret")
        >>> await shell.exec("s-1", "uname -a")
        >>> await shell.disconnect("s-1")
    """

    connect_timeout: float = 15.0
    close_timeout: float = 5.0
    events: OutputBus = field(default_factory=OutputBus)

    _channels: dict[str, _InteractiveChannel] = field(default_factory=dict, repr=False)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def _open(self, host: str, port: int, username: str, secret: str) -> asyncssh.SSHClientConnection:
        try:
            return await asyncssh.connect(
                host,
                port=port,
                username=username,
                password=secret,
                known_hosts=None,
                client_keys=None,
                agent_path=None,
                connect_timeout=self.connect_timeout,
            )
        except asyncssh.PermissionDenied as e:
            raise AuthenticationFailedError(
                f"Authentication failed for {username}@{host}:{port}: {e.reason}"
            ) from e
        except (OSError, asyncssh.Error) as e:
            raise RemoteCommandError(f"Connection to {host}:{port} failed: {e}") from e

    def _emit(self, session_id: str, kind: OutputKind, text: str) -> None:
        self.events.emit(OutputEvent(session_id=session_id, kind=kind, text=text))

    async def _pump(self, session_id: str, stream: asyncssh.SSHReader[str], kind: OutputKind) -> None:
        try:
            while chunk := await stream.read(READ_CHUNK):
                self._emit(session_id, kind, chunk)
        except (asyncssh.Error, OSError) as e:
            self._emit(session_id, "meta", f"Stream error: {e}")
        # End of stdout means the remote shell exited.
        if kind == "stdout":
            self._emit(session_id, "meta", REMOTE_CLOSED_TEXT)

    async def connect(
        self,
        session_id: str,
        host: str,
        port: int,
        username: str,
        secret: str,
    ) -> datetime:
        log = logger.bind(component="ssh", session_id=session_id)
        if session_id in self._channels:
            raise RemoteCommandError(f"Session {session_id} is already open")

        log.debug(f"Connecting to {host}:{port} ({username})")
        conn = await self._open(host, port, username, secret)
        try:
            process = await conn.create_process(
                term_type=TERM_TYPE,
                term_size=DEFAULT_TERM_SIZE,
                encoding="utf-8",
                errors="replace",
            )
        except (OSError, asyncssh.Error) as e:
            conn.close()
            raise RemoteCommandError(f"Failed to open shell on {host}: {e}") from e

        channel = _InteractiveChannel(conn=conn, process=process)
        channel.readers = [
            asyncio.create_task(self._pump(session_id, process.stdout, "stdout")),
            asyncio.create_task(self._pump(session_id, process.stderr, "stderr")),
        ]
        self._channels[session_id] = channel
        log.debug(f"Connected to {host}")
        return utcnow()

    def _require(self, session_id: str, operation: str) -> _InteractiveChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            raise NotConnectedError(operation)
        return channel

    # -------------------------------------------------------------------------
    # Interactive
    # -------------------------------------------------------------------------

    async def exec(self, session_id: str, command: str) -> ExecResult:
        channel = self._require(session_id, "execute a command")
        logger.bind(component="ssh", session_id=session_id).debug(f"exec: {_preview(command)}")
        try:
            channel.process.stdin.write(command + "\n")
            await channel.process.stdin.drain()
        except (OSError, asyncssh.Error, BrokenPipeError) as e:
            raise RemoteCommandError(f"Failed to send command: {e}") from e
        return ExecResult(session_id=session_id, command=command)

    async def send_control(self, session_id: str, signal: ControlSignal) -> bool:
        channel = self._require(session_id, "send a control signal")
        sequence = CONTROL_SEQUENCES.get(signal)
        if sequence is None:
            raise ValueError(f"Unknown control signal: {signal!r}")
        try:
            channel.process.stdin.write(sequence)
            await channel.process.stdin.drain()
        except (OSError, asyncssh.Error, BrokenPipeError) as e:
            raise RemoteCommandError(f"Failed to send {signal}: {e}") from e
        return True

    async def resize(
        self,
        session_id: str,
        cols: int,
        rows: int,
        pixel_width: int = 0,
        pixel_height: int = 0,
    ) -> tuple[int, int]:
        channel = self._require(session_id, "resize the terminal")
        channel.process.change_terminal_size(cols, rows, pixel_width, pixel_height)
        return cols, rows

    async def disconnect(self, session_id: str) -> bool:
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return False

        channel.process.close()
        channel.conn.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(channel.conn.wait_closed(), timeout=self.close_timeout)
        for reader in channel.readers:
            reader.cancel()
        logger.bind(component="ssh", session_id=session_id).debug("Disconnected")
        return True

    # -------------------------------------------------------------------------
    # One-shot
    # -------------------------------------------------------------------------

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
        log = logger.bind(component="ssh", session_id=session_id)
        log.debug(f"one-shot on {host}:{port}: {_preview(command)}")

        stdout: list[str] = []
        stderr: list[str] = []

        async def collect(stream: asyncssh.SSHReader[str], kind: OutputKind, sink: list[str]) -> None:
            async for line in stream:
                sink.append(line)
                self._emit(session_id, kind, line.rstrip("\n"))

        conn = await self._open(host, port, username, secret)
        self._emit(session_id, "meta", f"Connected to {username}@{host}:{port}")
        try:
            async with conn.create_process(command, encoding="utf-8", errors="replace") as proc:
                readers = asyncio.gather(
                    collect(proc.stdout, "stdout", stdout),
                    collect(proc.stderr, "stderr", stderr),
                )
                try:
                    await asyncio.wait_for(readers, timeout=timeout)
                    completed = await proc.wait(check=False)
                except TimeoutError as e:
                    proc.kill()
                    raise RemoteCommandError(f"Command timed out after {timeout:.0f}s") from e
        except (OSError, asyncssh.Error) as e:
            raise RemoteCommandError(f"One-shot execution on {host} failed: {e}") from e
        finally:
            conn.close()

        log.debug(f"one-shot exit_status={completed.exit_status}")
        return ExecResult(
            session_id=session_id,
            command=command,
            stdout="".join(stdout),
            stderr="".join(stderr),
            exit_status=completed.exit_status,
        )

    async def close(self) -> None:
        """Disconnect every interactive channel."""
        for session_id in list(self._channels):
            await self.disconnect(session_id)
