"""Bounded polling of eventually-consistent cloud operations.

A watch repeatedly re-fetches a resource collection, resolves its target by
id or name and classifies the observed status until a terminal condition:

- ``create`` / ``status``: success or failure classification stops the watch.
- ``delete``: the target disappearing is success; a failure classification
  while it is still listed stops the watch as a failed deletion.
- Any mode: the attempt ceiling stops the watch with ``gave_up``.

Only one watch runs per watcher; starting another cancels the previous one.
"""

from __future__ import annotations

from typing import TypeAlias

import asyncio
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from loguru import logger

from hcforge.config import WatchConfig
from hcforge.constants import ServerState
from hcforge.infra.protocols import ResourceFetcher
from hcforge.types import Classification, Resource, WatchMode, WatchOutcome, WatchResult

Classifier: TypeAlias = Callable[[Resource], Classification]
Resolver: TypeAlias = Callable[[Sequence[Resource], str], Resource | None]
WatchCallback: TypeAlias = Callable[["Watch"], None]
DoneCallback: TypeAlias = Callable[[WatchResult], None]


def status_classifier(
    success: Iterable[str],
    failure: Iterable[str] = (ServerState.ERROR,),
) -> Classifier:
    """Build a classifier from sets of success and failure status names.

    Example:
        >>> classify = status_classifier(success=["ACTIVE"])
        >>> classify(Resource(id="s-1", status="active"))
        'success'
    """
    ok = {s.upper() for s in success}
    bad = {s.upper() for s in failure}

    def classify(resource: Resource) -> Classification:
        status = resource.status.upper()
        if status in ok:
            return "success"
        if status in bad:
            return "failure"
        return "neutral"

    return classify


classify_running = status_classifier(success=[ServerState.ACTIVE])
classify_stopped = status_classifier(success=[ServerState.SHUTOFF])


def resolve_target(resources: Sequence[Resource], target: str) -> Resource | None:
    """Find a resource by id, falling back to an exact name match."""
    for resource in resources:
        if resource.id == target:
            return resource
    for resource in resources:
        if resource.name and resource.name == target:
            return resource
    return None


@dataclass(slots=True)
class Watch:
    """Mutable state of the running watch."""

    target: str
    mode: WatchMode
    attempts: int = 0
    last_status: str | None = None
    last_error: str | None = None

    def result(self, outcome: WatchOutcome) -> WatchResult:
        return WatchResult(
            target=self.target,
            mode=self.mode,
            outcome=outcome,
            attempts=self.attempts,
            last_status=self.last_status,
            error=self.last_error,
        )


class OperationWatcher:
    """Runs at most one bounded watch at a time.

    Args:
        config: Initial delay, tick interval and attempt ceiling.
    """

    def __init__(self, config: WatchConfig | None = None) -> None:
        self._config = config or WatchConfig()
        self._watch: Watch | None = None
        self._task: asyncio.Task[WatchResult] | None = None
        self._on_done: DoneCallback | None = None
        self._last_result: WatchResult | None = None

    @property
    def watch(self) -> Watch | None:
        return self._watch

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_result(self) -> WatchResult | None:
        return self._last_result

    def start(
        self,
        target: str,
        mode: WatchMode,
        fetch: ResourceFetcher,
        classify: Classifier = classify_running,
        *,
        resolve: Resolver = resolve_target,
        on_tick: WatchCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> asyncio.Task[WatchResult]:
        """Start watching ``target``, cancelling any watch already in flight."""
        self.cancel()
        watch = Watch(target=target, mode=mode)
        self._watch = watch
        self._on_done = on_done
        self._task = asyncio.create_task(self._run(watch, fetch, classify, resolve, on_tick))
        logger.bind(component="watch", watch=target).debug(f"Watch started mode={mode}")
        return self._task

    def cancel(self) -> None:
        """Stop the running watch; its awaiters see CancelledError."""
        watch, task = self._watch, self._task
        self._task = None
        if task is None or task.done() or watch is None:
            return
        task.cancel()
        self._finish(watch, watch.result("cancelled"))

    def _finish(self, watch: Watch, result: WatchResult) -> None:
        if self._watch is not watch:
            return
        self._watch = None
        self._last_result = result
        on_done, self._on_done = self._on_done, None
        if on_done is not None:
            on_done(result)

    def _evaluate(
        self,
        watch: Watch,
        resources: Sequence[Resource],
        classify: Classifier,
        resolve: Resolver,
    ) -> WatchOutcome | None:
        resource = resolve(resources, watch.target)
        if resource is None:
            return "deleted" if watch.mode == "delete" else None

        watch.last_status = resource.status
        match (watch.mode, classify(resource)):
            case ("delete", "failure"):
                watch.last_error = f"Deletion failed: status {resource.status}"
                return "failed"
            case ("delete", _):
                return None
            case (_, "success"):
                return "succeeded"
            case (_, "failure"):
                watch.last_error = f"Resource entered status {resource.status}"
                return "failed"
            case _:
                return None

    async def _run(
        self,
        watch: Watch,
        fetch: ResourceFetcher,
        classify: Classifier,
        resolve: Resolver,
        on_tick: WatchCallback | None,
    ) -> WatchResult:
        log = logger.bind(component="watch", watch=watch.target)
        await asyncio.sleep(self._config.initial_delay)

        while True:
            watch.attempts += 1
            outcome: WatchOutcome | None = None
            try:
                resources = await fetch()
            except Exception as e:
                watch.last_error = str(e) or type(e).__name__
                log.warning(f"Watch fetch failed (attempt {watch.attempts}): {watch.last_error}")
            else:
                outcome = self._evaluate(watch, resources, classify, resolve)

            if self._watch is not watch:
                return watch.result("cancelled")
            if on_tick is not None:
                on_tick(watch)

            if outcome is None and watch.attempts >= self._config.max_attempts:
                outcome = "gave_up"
                log.warning(f"Gave up after {watch.attempts} attempts (last status {watch.last_status})")

            if outcome is not None:
                result = watch.result(outcome)
                log.info(f"Watch finished: {outcome} after {watch.attempts} attempt(s)")
                self._finish(watch, result)
                return result

            await asyncio.sleep(self._config.interval)
