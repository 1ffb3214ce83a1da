"""ForgeConsole: explicit owner of every orchestration component.

The console holds the vault, the session manager, the watcher and the task
orchestrator for one desktop window and drives them from explicit events
instead of ambient globals.

Example:
    console = ForgeConsole(AsyncSSHShell(), JsonFileStore(path), resolve_config())
    await console.init()
    await console.switch_region("ap-southeast-1")

    # after every server-list refresh
    await console.on_resources_updated("ap-southeast-1", servers)

    await console.teardown()
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from loguru import logger

from hcforge.config import ForgeConfig
from hcforge.constants import StoreKey
from hcforge.errors import EndpointUnavailableError, MissingSecretError
from hcforge.infra.cache import ResourceCache
from hcforge.infra.protocols import KeyValueStore, RemoteShell, ResourceFetcher
from hcforge.observability.logging import _setup_logging, _teardown_logging
from hcforge.platform_ops import PlatformOps
from hcforge.session.manager import SessionManager
from hcforge.tasks.orchestrator import DrainReport, TaskOrchestrator
from hcforge.tasks.repository import TaskRepository
from hcforge.types import Resource, Secret, Session, SessionTarget, TaskConfig, WatchMode, WatchResult
from hcforge.vault import ApiCredentials, CredentialVault, PasswordStore
from hcforge.watch import Classifier, OperationWatcher, WatchCallback, classify_running


class ForgeConsole:
    """Wires the components together and owns their lifecycle.

    Args:
        shell: Remote command surface shared by sessions and startup tasks.
        store: Persistent key-value store.
        config: Resolved configuration; defaults apply when omitted.
    """

    def __init__(self, shell: RemoteShell, store: KeyValueStore, config: ForgeConfig | None = None) -> None:
        self.config = config or ForgeConfig()
        self.store = store
        self.vault = CredentialVault()
        self.passwords = PasswordStore(self.vault, store)
        self.cache = ResourceCache(store)
        self.sessions = SessionManager(shell, self.config.terminal)
        self.watcher = OperationWatcher(self.config.watch)
        self.tasks = TaskOrchestrator(
            self.sessions,
            TaskRepository(store),
            self.passwords,
            shell.events,
            self.config.tasks,
            self.config.terminal,
        )
        self.platform = PlatformOps(self.sessions)
        self._region: str | None = None
        self._resources: dict[str, Resource] = {}
        self._handler_ids: list[int] = []
        self._log = logger.bind(component="console")

    @property
    def region(self) -> str | None:
        return self._region

    @property
    def resources(self) -> tuple[Resource, ...]:
        return tuple(self._resources.values())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Configure logging and load credentials, secrets and task configs."""
        log_config = self.config.log
        if log_config.file or log_config.console:
            self._handler_ids = _setup_logging(log_config)

        access_key = await self.store.get(StoreKey.ACCESS_KEY)
        secret_key = await self.store.get(StoreKey.SECRET_KEY)
        self.vault.set_credentials(
            ApiCredentials(
                access_key=access_key if isinstance(access_key, str) else "",
                secret_key=secret_key if isinstance(secret_key, str) else "",
            )
        )
        passwords = await self.passwords.load()
        tasks = await self.tasks.load()
        self._log.info(f"Console initialized: {passwords} saved password(s), {tasks} startup task(s)")

    async def teardown(self) -> None:
        self.watcher.cancel()
        self.tasks.teardown()
        await self.sessions.close()
        self._log.info("Console torn down")
        if self._handler_ids:
            _teardown_logging(self._handler_ids)
            self._handler_ids = []

    # -------------------------------------------------------------------------
    # Credentials and preferences
    # -------------------------------------------------------------------------

    async def set_credentials(self, access_key: str, secret_key: str) -> None:
        """Persist new API credentials; secrets saved under the old pair become unrecoverable."""
        await self.store.set(StoreKey.ACCESS_KEY, access_key.strip())
        await self.store.set(StoreKey.SECRET_KEY, secret_key.strip())
        self.vault.set_credentials(ApiCredentials(access_key=access_key, secret_key=secret_key))
        self.passwords.invalidate_plaintext()
        self._log.info("API credentials updated")

    async def startup_preferences(self) -> tuple[bool, bool]:
        """Saved (auto_update, setup_gui_rdp) defaults for new servers."""
        auto_update = await self.store.get(StoreKey.PREF_AUTO_UPDATE)
        setup_gui_rdp = await self.store.get(StoreKey.PREF_SETUP_GUI_RDP)
        return auto_update is True, setup_gui_rdp is True

    async def set_startup_preferences(self, *, auto_update: bool, setup_gui_rdp: bool) -> None:
        await self.store.set(StoreKey.PREF_AUTO_UPDATE, auto_update)
        await self.store.set(StoreKey.PREF_SETUP_GUI_RDP, setup_gui_rdp)

    # -------------------------------------------------------------------------
    # Resource events
    # -------------------------------------------------------------------------

    async def switch_region(self, region: str) -> None:
        """Drop everything scoped to the previous region."""
        if region == self._region:
            return
        self._log.bind(region=region).info(f"Switching region from {self._region}")
        self.watcher.cancel()
        await self.sessions.disconnect(silent=True)
        self.tasks.switch_region(region)
        self._region = region
        self._resources = {}

    async def on_resources_updated(
        self, region: str, resources: Sequence[Resource]
    ) -> asyncio.Task[DrainReport | None] | None:
        """Handle a completed server-list refresh for ``region``.

        Listings for a region other than the current one are stale and ignored.
        """
        if region != self._region:
            self._log.bind(region=region).debug("Ignoring listing for inactive region")
            return None
        self._resources = {r.id: r for r in resources}
        await self.cache.write("ecses", region, [_resource_record(r) for r in resources])
        return await self.tasks.reconcile(resources)

    async def list_resources(self, fetch: ResourceFetcher, *, refresh: bool = False) -> tuple[Resource, ...]:
        """Server list for the current region, served from the cache unless ``refresh``.

        Only a live listing reaches the task orchestrator; a cached one may
        predate the servers becoming ready.
        """
        region = self._region
        if region is None:
            return ()

        fetched: list[Sequence[Resource]] = []

        async def loader() -> list[dict[str, str | None]]:
            resources = await fetch()
            fetched.append(resources)
            return [_resource_record(r) for r in resources]

        entry = await self.cache.load("ecses", region, loader, refresh=refresh)
        if region != self._region:
            return ()
        if fetched:
            resources = tuple(fetched[0])
            self._resources = {r.id: r for r in resources}
            await self.tasks.reconcile(resources)
            return resources

        resources = tuple(r for r in map(_resource_from_record, entry.data or ()) if r is not None)
        self._resources = {r.id: r for r in resources}
        self._log.bind(region=region).debug(f"Serving {len(resources)} cached server(s)")
        return resources

    async def server_created(
        self,
        resource: Resource,
        password: str,
        *,
        auto_update: bool | None = None,
        setup_gui_rdp: bool | None = None,
    ) -> bool:
        """Remember the admin password and schedule startup tasks for a new server.

        Flags left as None fall back to the saved startup preferences.
        """
        default_update, default_rdp = await self.startup_preferences()
        config = TaskConfig(
            region=resource.region or self._region or "",
            auto_update=default_update if auto_update is None else auto_update,
            setup_gui_rdp=default_rdp if setup_gui_rdp is None else setup_gui_rdp,
        )
        if config.has_steps:
            return await self.tasks.schedule(resource.id, config, password)
        await self.passwords.remember(Secret(resource_id=resource.id, value=password))
        return False

    async def delete_resource(self, resource_id: str) -> None:
        """Forget everything held for a deleted server."""
        session = self.sessions.session
        if session is not None and session.resource_id == resource_id:
            await self.sessions.disconnect(silent=True)
        await self.passwords.forget(resource_id)
        await self.tasks.forget(resource_id)
        self._resources.pop(resource_id, None)
        self._log.bind(resource_id=resource_id).info("Resource state cleared")

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def target_for(self, resource_id: str) -> SessionTarget:
        resource = self._resources.get(resource_id)
        endpoint = resource.endpoint if resource is not None else None
        if endpoint is None:
            raise EndpointUnavailableError(resource_id)
        return SessionTarget(
            resource_id=resource_id,
            host=endpoint,
            port=self.config.terminal.default_port,
            username=self.config.terminal.default_username,
        )

    async def connect(self, resource_id: str, password: str | None = None) -> Session | None:
        """Open the interactive session using the given or saved password."""
        target = self.target_for(resource_id)
        secret = password or await self.passwords.recall(resource_id)
        if not secret:
            raise MissingSecretError(resource_id)
        session = await self.sessions.connect(target, secret)
        if session is not None and password:
            await self.passwords.remember(Secret(resource_id=resource_id, value=password))
        return session

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    def watch(
        self,
        target: str,
        mode: WatchMode,
        fetch: ResourceFetcher,
        classify: Classifier = classify_running,
        *,
        on_tick: WatchCallback | None = None,
    ) -> asyncio.Task[WatchResult]:
        """Poll ``fetch`` until ``target`` settles; each listing also refreshes tasks."""
        region = self._region

        async def fetch_and_reconcile() -> Sequence[Resource]:
            resources = await fetch()
            if region is not None and region == self._region:
                await self.on_resources_updated(region, resources)
            return resources

        return self.watcher.start(target, mode, fetch_and_reconcile, classify, on_tick=on_tick)


def _resource_record(resource: Resource) -> dict[str, str | None]:
    return {
        "id": resource.id,
        "name": resource.name,
        "status": resource.status,
        "region": resource.region,
        "publicIp": resource.public_ip,
        "privateIp": resource.private_ip,
    }


def _resource_from_record(raw: object) -> Resource | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("id"), str) or not raw["id"]:
        return None

    def text(key: str) -> str:
        value = raw.get(key)
        return value if isinstance(value, str) else ""

    return Resource(
        id=raw["id"],
        name=text("name"),
        status=text("status"),
        region=text("region"),
        public_ip=text("publicIp") or None,
        private_ip=text("privateIp") or None,
    )
