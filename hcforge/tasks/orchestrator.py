"""Startup task queue.

Jobs are queued per resource id and run one at a time through a one-shot
remote execution. The drain loop is guarded by a single in-flight flag and
exits after a full lap of stalled candidates, so an unready queue never
spins. Resource-list updates re-enqueue ready jobs and tear down jobs whose
resource disappeared.

Example:
    orchestrator = TaskOrchestrator(sessions, repository, passwords, shell.events)
    await orchestrator.load()
    orchestrator.switch_region("ap-southeast-1")
    await orchestrator.schedule(server_id, TaskConfig(region="ap-southeast-1", auto_update=True), password)

    # after every resource-list refresh
    await orchestrator.reconcile(servers)
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, replace

from loguru import logger

from hcforge.config import TasksConfig, TerminalConfig
from hcforge.errors import ForgeError, MissingSecretError, describe_failure
from hcforge.infra.bus import OutputBus
from hcforge.session.manager import SessionManager
from hcforge.session.sanitize import sanitize_output
from hcforge.tasks.progress import ProgressTracker
from hcforge.tasks.repository import TaskRepository
from hcforge.tasks.scripts import build_startup_script, generate_rdp_username
from hcforge.types import OutputEvent, ProgressInfo, Resource, Secret, SessionTarget, TaskConfig, TaskStatus
from hcforge.vault import PasswordStore


@dataclass(frozen=True, slots=True)
class DrainReport:
    """What one drain pass did."""

    executed: tuple[str, ...] = ()
    dropped: tuple[str, ...] = ()
    stalled: tuple[str, ...] = ()


class TaskOrchestrator:
    """Owns the pending queue, the running slot and per-job progress.

    Args:
        sessions: Executes the one-shot scripts.
        repository: Persisted task configs.
        passwords: Remote-login secrets, also used as the RDP password.
        events: Output stream; only session ids with the job prefix are read.
        config: One-shot timeout and session id prefix.
        terminal: Login port and username defaults.
    """

    def __init__(
        self,
        sessions: SessionManager,
        repository: TaskRepository,
        passwords: PasswordStore,
        events: OutputBus,
        config: TasksConfig | None = None,
        terminal: TerminalConfig | None = None,
    ) -> None:
        self._sessions = sessions
        self._repository = repository
        self._passwords = passwords
        self._config = config or TasksConfig()
        self._terminal = terminal or TerminalConfig()
        self._region: str | None = None
        self._resources: dict[str, Resource] = {}
        self._queue: deque[str] = deque()
        self._running: str | None = None
        self._draining = False
        self._drain_task: asyncio.Task[DrainReport | None] | None = None
        self._generation = 0
        self._progress = ProgressTracker()
        self._jobs: dict[str, str] = {}
        self._errors: dict[str, str] = {}
        self._unsubscribe = events.subscribe(self._on_output, prefix=self._config.session_prefix)
        self._log = logger.bind(component="tasks")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def region(self) -> str | None:
        return self._region

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(self._queue)

    @property
    def running(self) -> str | None:
        return self._running

    @property
    def draining(self) -> bool:
        return self._draining

    def progress(self, resource_id: str) -> ProgressInfo | None:
        return self._progress.get(resource_id)

    def last_error(self, resource_id: str) -> str | None:
        return self._errors.get(resource_id)

    def config(self, resource_id: str) -> TaskConfig | None:
        return self._repository.get(resource_id)

    def is_tracked(self, resource_id: str) -> bool:
        return resource_id in self._queue or resource_id == self._running

    async def load(self) -> int:
        return await self._repository.load()

    # -------------------------------------------------------------------------
    # Output ingestion
    # -------------------------------------------------------------------------

    def _on_output(self, event: OutputEvent) -> None:
        resource_id = self._jobs.get(event.session_id)
        if resource_id is None:
            return
        for line in sanitize_output(event.text).splitlines():
            self._progress.observe(resource_id, line)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def enqueue(self, resource_id: str) -> bool:
        """Add ``resource_id`` to the tail unless it is already queued or running."""
        if self.is_tracked(resource_id):
            return False
        self._queue.append(resource_id)
        return True

    def switch_region(self, region: str) -> None:
        """Drop every queued job and forget the last-known resources."""
        self._generation += 1
        self._region = region
        self._resources.clear()
        self._queue.clear()
        self._jobs.clear()
        self._progress.clear()
        self._drain_task = None
        self._log.bind(region=region).debug("Task queue reset for region")

    def kick(self) -> asyncio.Task[DrainReport | None] | None:
        """Start a drain in the background unless one is already in flight."""
        if self._draining or not self._queue:
            return None
        if self._drain_task is not None and not self._drain_task.done():
            return self._drain_task
        self._drain_task = asyncio.create_task(self.drain())
        return self._drain_task

    async def drain(self) -> DrainReport | None:
        """Run queued jobs until the queue is empty or a full lap stalls.

        Returns None when another drain is already in flight.
        """
        if self._draining:
            return None
        self._draining = True
        generation = self._generation
        executed: list[str] = []
        dropped: list[str] = []
        stalled: list[str] = []
        rotated = 0
        try:
            while self._queue and generation == self._generation:
                if rotated >= len(self._queue):
                    break
                resource_id = self._queue[0]
                config = self._repository.get(resource_id)
                resource = self._resources.get(resource_id)

                if config is None or config.region != self._region or config.status != "pending":
                    self._queue.popleft()
                    dropped.append(resource_id)
                    continue
                if resource is None:
                    self._queue.popleft()
                    dropped.append(resource_id)
                    continue
                if not resource.is_ready or resource.endpoint is None:
                    self._queue.rotate(-1)
                    rotated += 1
                    if resource_id not in stalled:
                        stalled.append(resource_id)
                    continue

                self._queue.popleft()
                rotated = 0
                if resource_id in stalled:
                    stalled.remove(resource_id)
                await self._execute(resource_id, config, resource, generation)
                executed.append(resource_id)
        finally:
            self._draining = False
            # A region switch mid-job leaves the new queue to a fresh drain.
            if generation != self._generation and self._queue:
                self.kick()

        if stalled:
            self._log.debug(f"Drain stalled on {len(stalled)} job(s) waiting for readiness")
        return DrainReport(executed=tuple(executed), dropped=tuple(dropped), stalled=tuple(stalled))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _session_id(self, resource_id: str) -> str:
        return f"{self._config.session_prefix}{resource_id}-{int(time.time() * 1000)}"

    async def _execute(
        self,
        resource_id: str,
        config: TaskConfig,
        resource: Resource,
        generation: int,
    ) -> None:
        log = self._log.bind(resource_id=resource_id, region=config.region)
        session_id = self._session_id(resource_id)
        self._running = resource_id
        self._jobs[session_id] = resource_id
        self._errors.pop(resource_id, None)
        self._progress.start(resource_id, session_id)
        log.bind(session_id=session_id).info("Startup task started")

        status: TaskStatus = "done"
        message: str | None = None
        try:
            secret = await self._passwords.recall(resource_id)
            if not secret:
                raise MissingSecretError(resource_id)
            target = SessionTarget(
                resource_id=resource_id,
                host=resource.endpoint or "",
                port=self._terminal.default_port,
                username=self._terminal.default_username,
            )
            await self._sessions.exec_one_shot(
                target,
                secret,
                build_startup_script(config, secret),
                session_id=session_id,
                timeout=self._config.one_shot_timeout,
            )
        except ForgeError as e:
            status = "failed"
            message = describe_failure(e, resource.endpoint)
            log.warning(f"Startup task failed: {message}")
        finally:
            self._jobs.pop(session_id, None)
            if self._running == resource_id:
                self._running = None

        if generation != self._generation:
            log.debug("Startup task finished after its context moved on")
        else:
            self._progress.finish(resource_id, success=status == "done", message=message)
            if message:
                self._errors[resource_id] = message

        current = self._repository.get(resource_id)
        if current is not None:
            await self._repository.put(resource_id, current.with_status(status))
        if status == "done":
            log.info("Startup task finished")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def schedule(self, resource_id: str, config: TaskConfig, secret: str) -> bool:
        """Register a job for a newly created resource and try to run it."""
        if not config.has_steps:
            return False
        if config.setup_gui_rdp and not config.rdp_username:
            config = replace(config, rdp_username=generate_rdp_username())
        await self._repository.put(resource_id, config.with_status("pending"))
        await self._passwords.remember(Secret(resource_id=resource_id, value=secret))
        if config.region == self._region:
            self.enqueue(resource_id)
            self.kick()
        self._log.bind(resource_id=resource_id).info("Startup task scheduled")
        return True

    async def retry(self, resource_id: str) -> bool:
        """Reset a failed job to pending and queue it again."""
        config = self._repository.get(resource_id)
        if config is None or config.status != "failed":
            return False
        await self._repository.put(resource_id, config.with_status("pending"))
        self._errors.pop(resource_id, None)
        self._progress.discard(resource_id)
        if config.region == self._region:
            self.enqueue(resource_id)
            self.kick()
        return True

    async def forget(self, resource_id: str) -> None:
        """Remove a job from every tracking set and delete its persisted config."""
        if resource_id in self._queue:
            self._queue.remove(resource_id)
        for session_id, rid in list(self._jobs.items()):
            if rid == resource_id:
                del self._jobs[session_id]
        self._progress.discard(resource_id)
        self._errors.pop(resource_id, None)
        await self._repository.delete(resource_id)

    async def reconcile(self, resources: Sequence[Resource]) -> asyncio.Task[DrainReport | None] | None:
        """Apply a fresh resource list for the current region.

        Returns the background drain task, if one was started.
        """
        if self._region is None:
            return None
        self._resources = {r.id: r for r in resources}

        for resource_id, config in self._repository.items():
            if config.region == self._region and resource_id not in self._resources:
                self._log.bind(resource_id=resource_id).info("Resource gone; dropping startup task")
                await self.forget(resource_id)

        for resource in resources:
            config = self._repository.get(resource.id)
            if (
                config is not None
                and config.region == self._region
                and config.status == "pending"
                and resource.is_ready
                and resource.endpoint is not None
            ):
                self.enqueue(resource.id)
        return self.kick()

    def teardown(self) -> None:
        """Clear all in-memory tracking; an in-flight drain stops after its await."""
        self._generation += 1
        self._unsubscribe()
        self._queue.clear()
        self._resources.clear()
        self._jobs.clear()
        self._errors.clear()
        self._progress.clear()
        self._running = None
        self._drain_task = None
        self._region = None
