from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import pytest

from hcforge.config import TasksConfig, TerminalConfig
from hcforge.infra.bus import OutputBus
from hcforge.infra.protocols import ControlSignal
from hcforge.infra.store import MemoryStore
from hcforge.session.manager import SessionManager
from hcforge.tasks.orchestrator import TaskOrchestrator
from hcforge.tasks.repository import TaskRepository
from hcforge.types import ExecResult, OutputEvent, Resource, utcnow
from hcforge.vault import ApiCredentials, CredentialVault, PasswordStore

FAST_KDF = 1_000


@dataclass
class OneShotCall:
    session_id: str
    host: str
    port: int
    username: str
    secret: str
    command: str
    timeout: float | None


@dataclass
class FakeShell:
    """In-memory RemoteShell that records calls and emits scripted output."""

    events: OutputBus = field(default_factory=OutputBus)
    open: set[str] = field(default_factory=set)
    connects: list[tuple[str, str]] = field(default_factory=list)
    execs: list[tuple[str, str]] = field(default_factory=list)
    resizes: list[tuple[str, int, int]] = field(default_factory=list)
    controls: list[tuple[str, str]] = field(default_factory=list)
    one_shots: list[OneShotCall] = field(default_factory=list)

    connect_gate: asyncio.Event | None = None
    connect_error: Exception | None = None
    exec_stdout: str = ""
    exec_error: Exception | None = None
    one_shot_gate: asyncio.Event | None = None
    one_shot_lines: list[str] = field(default_factory=list)
    one_shot_stderr: str = ""
    one_shot_exit: int | None = 0
    one_shot_error: Exception | None = None

    async def connect(self, session_id: str, host: str, port: int, username: str, secret: str) -> datetime:
        self.connects.append((session_id, host))
        gate = self.connect_gate
        if gate is not None:
            await gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.open.add(session_id)
        self.events.emit(OutputEvent(session_id=session_id, kind="stdout", text="Welcome\r\n"))
        return utcnow()

    async def exec(self, session_id: str, command: str) -> ExecResult:
        self.execs.append((session_id, command))
        if self.exec_error is not None:
            raise self.exec_error
        return ExecResult(session_id=session_id, command=command, stdout=self.exec_stdout, exit_status=0)

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
        self.one_shots.append(OneShotCall(session_id, host, port, username, secret, command, timeout))
        gate = self.one_shot_gate
        if gate is not None:
            await gate.wait()
        for line in self.one_shot_lines:
            self.events.emit(OutputEvent(session_id=session_id, kind="stdout", text=line + "\n"))
        if self.one_shot_error is not None:
            raise self.one_shot_error
        return ExecResult(
            session_id=session_id,
            command=command,
            stdout="\n".join(self.one_shot_lines),
            stderr=self.one_shot_stderr,
            exit_status=self.one_shot_exit,
        )

    async def disconnect(self, session_id: str) -> bool:
        if session_id in self.open:
            self.open.discard(session_id)
            return True
        return False

    async def resize(
        self, session_id: str, cols: int, rows: int, pixel_width: int = 0, pixel_height: int = 0
    ) -> tuple[int, int]:
        self.resizes.append((session_id, cols, rows))
        return cols, rows

    async def send_control(self, session_id: str, signal: ControlSignal) -> bool:
        self.controls.append((session_id, signal))
        return True


def server(
    id: str,
    status: str = "ACTIVE",
    *,
    region: str = "ap-southeast-1",
    public_ip: str | None = "203.0.113.10",
    name: str = "",
) -> Resource:
    return Resource(id=id, name=name or id, status=status, region=region, public_ip=public_ip)


@dataclass
class TaskHarness:
    shell: FakeShell
    store: MemoryStore
    passwords: PasswordStore
    repository: TaskRepository
    sessions: SessionManager
    orchestrator: TaskOrchestrator


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(ApiCredentials("AK1", "SK1"), iterations=FAST_KDF)


@pytest.fixture
def sessions(shell: FakeShell) -> SessionManager:
    return SessionManager(shell, TerminalConfig(resize_debounce=0.01, history_size=3, max_entries=10))


@pytest.fixture
def harness(shell: FakeShell, store: MemoryStore, vault: CredentialVault) -> TaskHarness:
    passwords = PasswordStore(vault, store)
    repository = TaskRepository(store)
    sessions = SessionManager(shell, TerminalConfig())
    orchestrator = TaskOrchestrator(
        sessions,
        repository,
        passwords,
        shell.events,
        TasksConfig(one_shot_timeout=60.0),
    )
    orchestrator.switch_region("ap-southeast-1")
    return TaskHarness(shell, store, passwords, repository, sessions, orchestrator)


@pytest.fixture
def make_server():
    return server
