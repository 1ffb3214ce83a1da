"""Custom exception hierarchy for HC Forge.

All hcforge-specific exceptions inherit from ForgeError, enabling callers
to catch every orchestration failure with a single except clause.

Crypto and persisted-data problems are deliberately absent: the vault and
the repositories report those as ``None`` / dropped records instead.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import NoReturn, TypeAlias

FailurePredicate: TypeAlias = Callable[[str], bool]


class ForgeError(Exception):
    """Base exception for all HC Forge errors."""


class ConfigurationError(ForgeError):
    """Raised for invalid configuration files or values."""


class NotConnectedError(ForgeError):
    """Raised when an interactive operation runs without a live session."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Cannot {operation}: no interactive session is connected.")


class EndpointUnavailableError(ForgeError):
    """Raised when no reachable network endpoint is known for a resource."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"No reachable endpoint is known for {resource_id}.")


class MissingSecretError(ForgeError):
    """Raised when a remote login is attempted with an empty secret."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"No password is available for {resource_id}.")


class RemoteCommandError(ForgeError):
    """Raised when the transport or the remote command fails."""

    def __init__(self, message: str, *, exit_status: int | None = None, stderr: str = "") -> None:
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(message)


class AuthenticationFailedError(RemoteCommandError):
    """Raised when the remote host rejects the supplied credentials."""


class UnconfirmedExecutionError(RemoteCommandError):
    """Raised when a one-shot command finished without reporting an exit status."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} reported no exit status; the remote result is unconfirmed."
        )


# =============================================================================
# Classification
# =============================================================================

AUTH_FAILURE_PATTERNS = (
    "permission denied",
    "authentication failed",
    "auth fail",
    "access denied",
    "no supported authentication methods",
    "invalid password",
    "userauth",
)


def on_message(*patterns: str, case_sensitive: bool = False) -> FailurePredicate:
    """Create a predicate matching error text against substrings.

    Example:
        >>> on_message("timeout")("Connection timeout after 30s")
        True
    """

    def predicate(text: str) -> bool:
        if case_sensitive:
            return any(p in text for p in patterns)
        lowered = text.lower()
        return any(p.lower() in lowered for p in patterns)

    return predicate


looks_like_auth_failure: FailurePredicate = on_message(*AUTH_FAILURE_PATTERNS)


def classify_remote_failure(exc: Exception) -> RemoteCommandError:
    """Wrap an arbitrary transport exception into the remote-failure taxonomy."""
    match exc:
        case AuthenticationFailedError() | UnconfirmedExecutionError():
            return exc
        case RemoteCommandError(exit_status=status, stderr=stderr):
            if looks_like_auth_failure(f"{exc} {stderr}"):
                return AuthenticationFailedError(str(exc), exit_status=status, stderr=stderr)
            return exc
        case _:
            text = str(exc) or type(exc).__name__
            if looks_like_auth_failure(text):
                return AuthenticationFailedError(text)
            return RemoteCommandError(text)


def describe_failure(exc: Exception, host: str | None = None) -> str:
    """User-facing message for a remote failure."""
    err = classify_remote_failure(exc)
    match err:
        case AuthenticationFailedError():
            where = f" by {host}" if host else ""
            return f"Authentication was rejected{where}; verify the remote password."
        case UnconfirmedExecutionError():
            return "No exit status was reported; the remote result is unconfirmed."
        case RemoteCommandError(exit_status=int() as status, stderr=stderr) if stderr.strip():
            tail = stderr.strip().splitlines()[-1]
            return f"Remote command exited with status {status}: {tail}"
        case _:
            return str(err)


def reraise_as(err: Exception, cause: Exception) -> NoReturn:
    """Raise ``err``, chaining ``cause`` unless they are the same exception."""
    if err is cause:
        raise err
    raise err from cause
