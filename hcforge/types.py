"""Data model shared by the vault, session, watcher and task components."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal, TypeAlias

from hcforge.constants import VAULT_RECORD_VERSION, ServerState

__all__ = [
    "Resource",
    "Secret",
    "EncryptedSecret",
    "SessionTarget",
    "Session",
    "TerminalEntry",
    "TerminalKind",
    "OutputKind",
    "OutputEvent",
    "ExecResult",
    "TaskStatus",
    "TaskConfig",
    "ProgressInfo",
    "WatchMode",
    "WatchOutcome",
    "WatchResult",
    "Classification",
    "utcnow",
    "parse_timestamp",
]

TerminalKind: TypeAlias = Literal["meta", "command", "stdout", "stderr"]
OutputKind: TypeAlias = Literal["meta", "stdout", "stderr"]
TaskStatus: TypeAlias = Literal["pending", "done", "failed"]
WatchMode: TypeAlias = Literal["create", "delete", "status"]
WatchOutcome: TypeAlias = Literal["succeeded", "failed", "deleted", "gave_up", "cancelled"]
Classification: TypeAlias = Literal["success", "failure", "neutral"]

TASK_STATUSES: tuple[TaskStatus, ...] = ("pending", "done", "failed")


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp, tolerating the trailing ``Z`` form."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


# =============================================================================
# Cloud Resources
# =============================================================================


@dataclass(frozen=True, slots=True)
class Resource:
    """Snapshot of a compute resource as last observed from the cloud API."""

    id: str
    name: str = ""
    status: str = ""
    region: str = ""
    public_ip: str | None = None
    private_ip: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status.upper() == ServerState.ACTIVE

    @property
    def endpoint(self) -> str | None:
        """Reachable address for remote login, if one is known."""
        host = (self.public_ip or "").strip()
        return host or None


# =============================================================================
# Secrets
# =============================================================================


@dataclass(frozen=True, slots=True)
class Secret:
    """Plaintext credential for one resource, held in memory only."""

    resource_id: str
    value: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class EncryptedSecret:
    """Durable form of a Secret.

    Field names in the persisted record follow the console's existing
    camelCase layout so stores written by earlier releases stay readable.
    """

    salt: bytes = field(repr=False)
    nonce: bytes = field(repr=False)
    ciphertext: bytes = field(repr=False)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = VAULT_RECORD_VERSION

    def to_record(self) -> dict[str, Any]:
        import base64

        return {
            "version": self.version,
            "saltB64": base64.b64encode(self.salt).decode("ascii"),
            "ivB64": base64.b64encode(self.nonce).decode("ascii"),
            "cipherB64": base64.b64encode(self.ciphertext).decode("ascii"),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, raw: Any) -> EncryptedSecret | None:
        """Parse a persisted record; ``None`` when malformed or of an unknown version."""
        import base64
        import binascii

        if not isinstance(raw, dict) or raw.get("version") != VAULT_RECORD_VERSION:
            return None
        parts = [raw.get("saltB64"), raw.get("ivB64"), raw.get("cipherB64")]
        if not all(isinstance(p, str) and p for p in parts):
            return None
        try:
            salt, nonce, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError):
            return None
        return cls(
            salt=salt,
            nonce=nonce,
            ciphertext=ciphertext,
            updated_at=parse_timestamp(raw.get("updatedAt")) or utcnow(),
        )


# =============================================================================
# Sessions
# =============================================================================


@dataclass(frozen=True, slots=True)
class SessionTarget:
    """Where an interactive or one-shot session connects to."""

    resource_id: str
    host: str
    port: int = 22
    username: str = "root"


@dataclass(frozen=True, slots=True)
class Session:
    """The single live interactive remote connection."""

    session_id: str
    target: SessionTarget
    connected_at: datetime

    @property
    def resource_id(self) -> str:
        return self.target.resource_id


@dataclass(frozen=True, slots=True)
class TerminalEntry:
    """One sanitized chunk of session output or an echoed command."""

    id: int
    at: datetime
    kind: TerminalKind
    text: str


@dataclass(frozen=True, slots=True)
class OutputEvent:
    """Push-style output event emitted by the remote shell."""

    session_id: str
    kind: OutputKind
    text: str
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Result of a remote command. ``exit_status`` is ``None`` when unreported."""

    session_id: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_status: int | None = None

    @property
    def confirmed(self) -> bool:
        return self.exit_status is not None


# =============================================================================
# Startup Tasks
# =============================================================================


@dataclass(frozen=True, slots=True)
class TaskConfig:
    """Bootstrap job bound to one resource (the resource id is the map key)."""

    region: str
    auto_update: bool = False
    setup_gui_rdp: bool = False
    rdp_username: str | None = None
    status: TaskStatus = "pending"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_steps(self) -> bool:
        return self.auto_update or self.setup_gui_rdp

    def with_status(self, status: TaskStatus) -> TaskConfig:
        return replace(self, status=status, updated_at=utcnow())

    def to_record(self) -> dict[str, Any]:
        return {
            "region": self.region,
            "autoUpdate": self.auto_update,
            "setupGuiRdp": self.setup_gui_rdp,
            "rdpUsername": self.rdp_username,
            "lastStatus": self.status,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, raw: Any) -> TaskConfig | None:
        """Parse a persisted record; ``None`` when it cannot describe a runnable job."""
        if not isinstance(raw, dict):
            return None
        region = raw.get("region")
        if not isinstance(region, str) or not region.strip():
            return None
        status = raw.get("lastStatus", "pending")
        if status not in TASK_STATUSES:
            return None
        auto_update = raw.get("autoUpdate") is True
        setup_gui_rdp = raw.get("setupGuiRdp") is True
        if not (auto_update or setup_gui_rdp):
            return None
        rdp_username = raw.get("rdpUsername")
        created = parse_timestamp(raw.get("createdAt")) or utcnow()
        return cls(
            region=region.strip(),
            auto_update=auto_update,
            setup_gui_rdp=setup_gui_rdp,
            rdp_username=rdp_username.strip() if isinstance(rdp_username, str) and rdp_username.strip() else None,
            status=status,
            created_at=created,
            updated_at=parse_timestamp(raw.get("updatedAt")) or created,
        )


@dataclass(slots=True)
class ProgressInfo:
    """Transient progress of a running or just-finished job."""

    session_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    percent: int | None = None
    last_line: str | None = None

    @property
    def running(self) -> bool:
        return self.started_at is not None and self.finished_at is None


# =============================================================================
# Watches
# =============================================================================


@dataclass(frozen=True, slots=True)
class WatchResult:
    """Terminal state of a watch."""

    target: str
    mode: WatchMode
    outcome: WatchOutcome
    attempts: int
    last_status: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in ("succeeded", "deleted")
