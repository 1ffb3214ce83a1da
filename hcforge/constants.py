"""Centralized constants and enums for HC Forge.

Store keys, cloud status names, limits and default timings live here so the
components agree on them without importing each other.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Final

# =============================================================================
# Persisted Store Keys
# =============================================================================


class StoreKey(StrEnum):
    """Logical keys in the persistent key-value store."""

    SERVER_PASSWORDS = "serverPasswords.v1"
    STARTUP_TASKS = "startupTasks.v1"
    ACCESS_KEY = "credentials.accessKey"
    SECRET_KEY = "credentials.secretKey"
    PREF_AUTO_UPDATE = "preferences.autoUpdate"
    PREF_SETUP_GUI_RDP = "preferences.setupGuiRdp"


def cache_key(kind: str, region: str, parent_id: str | None = None) -> str:
    """Store key for a cached resource listing."""
    if parent_id:
        return f"cache.{kind}.{region}.{parent_id}"
    return f"cache.{kind}.{region}"


# =============================================================================
# Cloud Server States
# =============================================================================


class ServerState(StrEnum):
    """ECS server status names as reported by the cloud API."""

    ACTIVE = "ACTIVE"
    BUILD = "BUILD"
    SHUTOFF = "SHUTOFF"
    REBOOT = "REBOOT"
    ERROR = "ERROR"
    DELETED = "DELETED"


# =============================================================================
# Vault
# =============================================================================

VAULT_RECORD_VERSION: Final = 1
PBKDF2_ITERATIONS: Final = 210_000
SALT_BYTES: Final = 16
NONCE_BYTES: Final = 12
KEY_BYTES: Final = 32

# =============================================================================
# Session
# =============================================================================

TERMINAL_MAX_ENTRIES: Final = 1200
HISTORY_SIZE: Final = 50
RESIZE_DEBOUNCE_SECONDS: Final = 0.12
DEFAULT_SSH_PORT: Final = 22
DEFAULT_SSH_USERNAME: Final = "root"

# =============================================================================
# Watcher
# =============================================================================

WATCH_INITIAL_DELAY: Final = 1.5
WATCH_INTERVAL: Final = 5.0
WATCH_MAX_ATTEMPTS: Final = 30

# =============================================================================
# Startup Tasks
# =============================================================================

PROGRESS_TAG: Final = "[hc-forge-progress]"
PROGRESS_FUNCTION: Final = "hc_forge_progress"
STARTUP_SESSION_PREFIX: Final = "startup-"
REMOTE_CLOSED_TEXT: Final = "Remote session closed."
ONE_SHOT_TIMEOUT: Final = 1800.0
RDP_USER_PREFIX: Final = "hcforge"

# =============================================================================
# Paths
# =============================================================================

FORGE_HOME: Final = Path.home() / ".hcforge"
DEFAULT_STORE_PATH: Final = FORGE_HOME / "store.json"
DEFAULT_LOG_FILE: Final = ".hcforge/hcforge.log"
