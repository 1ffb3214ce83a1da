"""Interactive session management and terminal output sanitization."""

from .manager import CommandHistory, SessionManager, SessionState, TerminalBuffer, new_session_id
from .sanitize import sanitize_output, strip_escape_sequences

__all__ = [
    "CommandHistory",
    "SessionManager",
    "SessionState",
    "TerminalBuffer",
    "new_session_id",
    "sanitize_output",
    "strip_escape_sequences",
]
