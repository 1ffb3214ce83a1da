"""HC Forge - orchestration core of a desktop cloud console.

Example:

    from hcforge import ForgeConsole, AsyncSSHShell, JsonFileStore, resolve_config

    config = resolve_config()
    console = ForgeConsole(AsyncSSHShell(), JsonFileStore(config.store.path), config)
    await console.init()
    await console.set_credentials(access_key, secret_key)
    await console.switch_region("ap-southeast-1")

    await console.server_created(server, password, auto_update=True)
    await console.on_resources_updated("ap-southeast-1", servers)

    session = await console.connect(server.id)
    await console.sessions.exec_interactive("uname -a")
"""

# Console
from hcforge.console import ForgeConsole

# Configuration
from hcforge.config import (
    ForgeConfig,
    StoreConfig,
    TasksConfig,
    TerminalConfig,
    WatchConfig,
    build_config,
    resolve_config,
)

# Errors
from hcforge.errors import (
    AuthenticationFailedError,
    ConfigurationError,
    EndpointUnavailableError,
    ForgeError,
    MissingSecretError,
    NotConnectedError,
    RemoteCommandError,
    UnconfirmedExecutionError,
)

# Infrastructure
from hcforge.infra import AsyncSSHShell, JsonFileStore, MemoryStore, OutputBus, ResourceCache

# Logging
from hcforge.observability import LogConfig

# Components
from hcforge.session import SessionManager, SessionState
from hcforge.tasks import TaskOrchestrator, TaskRepository
from hcforge.vault import ApiCredentials, CredentialVault, PasswordStore
from hcforge.watch import OperationWatcher

# Data model
from hcforge.types import (
    EncryptedSecret,
    ExecResult,
    OutputEvent,
    ProgressInfo,
    Resource,
    Secret,
    Session,
    SessionTarget,
    TaskConfig,
    TerminalEntry,
    WatchResult,
)

__all__ = [
    # Console
    "ForgeConsole",
    # Configuration
    "ForgeConfig",
    "StoreConfig",
    "TasksConfig",
    "TerminalConfig",
    "WatchConfig",
    "build_config",
    "resolve_config",
    "LogConfig",
    # Errors
    "AuthenticationFailedError",
    "ConfigurationError",
    "EndpointUnavailableError",
    "ForgeError",
    "MissingSecretError",
    "NotConnectedError",
    "RemoteCommandError",
    "UnconfirmedExecutionError",
    # Infrastructure
    "AsyncSSHShell",
    "JsonFileStore",
    "MemoryStore",
    "OutputBus",
    "ResourceCache",
    # Components
    "ApiCredentials",
    "CredentialVault",
    "PasswordStore",
    "SessionManager",
    "SessionState",
    "OperationWatcher",
    "TaskOrchestrator",
    "TaskRepository",
    # Data model
    "EncryptedSecret",
    "ExecResult",
    "OutputEvent",
    "ProgressInfo",
    "Resource",
    "Secret",
    "Session",
    "SessionTarget",
    "TaskConfig",
    "TerminalEntry",
    "WatchResult",
]
