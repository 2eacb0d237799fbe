"""Scheduler loop -- the process-wide driver.

Each tick:

1. Re-read definitions from the config source and reconcile the registry
   (hot reload: add / edit / remove without restart).
2. For each enabled workspace, evaluate the deploy and destroy schedule
   sets against the current minute.
3. Hand fired actions to the lifecycle controller, which records the
   matched minute on the runtime state *before* the action runs and spawns
   it as an independent task.  The loop never waits for an action.

Ticks are timer-driven rather than filesystem-event driven; ``reload``
forces an immediate re-read outside the cadence.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

from provisioner.runtime.cron import should_fire
from provisioner.runtime.models.enums import ActionKind

if TYPE_CHECKING:
    from provisioner.runtime.config_source import ConfigSource
    from provisioner.runtime.managers.lifecycle import LifecycleController
    from provisioner.runtime.registry import SyncSummary, WorkspaceEntry, WorkspaceRegistry

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Dispatch:
    """A fired trigger handed to the lifecycle controller."""

    workspace: str
    action: ActionKind
    minute: datetime
    task: asyncio.Task | None


class SchedulerLoop:
    def __init__(
        self,
        config_source: ConfigSource,
        registry: WorkspaceRegistry,
        controller: LifecycleController,
        *,
        poll_interval: float = 30.0,
        clock: Clock = local_now,
    ) -> None:
        self._source = config_source
        self._registry = registry
        self._controller = controller
        self._poll_interval = poll_interval
        self._clock = clock
        self._stop = asyncio.Event()
        self._reload_lock = asyncio.Lock()

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    # -- Reload ----------------------------------------------------------------

    async def reload(self) -> SyncSummary:
        """Re-read the config source and reconcile the registry now."""
        async with self._reload_lock:
            loaded = await to_thread.run_sync(self._source.load)
            summary = await self._registry.sync(loaded.definitions, loaded.unreadable)
        if summary.added or summary.updated or summary.removed or summary.deferred:
            logger.info(
                "Reload: {} added, {} updated, {} removed, {} deferred",
                len(summary.added),
                len(summary.updated),
                len(summary.removed),
                len(summary.deferred),
            )
        return summary

    # -- Tick ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[Dispatch]:
        """One reconciliation pass: reload, evaluate schedules, dispatch."""
        await self.reload()
        now = now or self._clock()
        dispatched: list[Dispatch] = []
        for entry in self._registry.entries():
            if not entry.definition.enabled:
                continue
            dispatched.extend(await self._evaluate(entry, now))
        return dispatched

    async def _evaluate(self, entry: WorkspaceEntry, now: datetime) -> list[Dispatch]:
        results: list[Dispatch] = []
        checks = (
            (ActionKind.DEPLOY, entry.deploy_schedule, entry.state.last_deploy_fired_at),
            (ActionKind.DESTROY, entry.destroy_schedule, entry.state.last_destroy_fired_at),
        )
        for action, schedule, last_fired in checks:
            fire, minute = should_fire(schedule, now, last_fired)
            if not fire or minute is None:
                continue
            logger.info("Workspace {}: {} schedule fired for {:%Y-%m-%d %H:%M}", entry.name, action, minute)
            task = await self._controller.dispatch(entry.name, action, minute)
            results.append(Dispatch(workspace=entry.name, action=action, minute=minute, task=task))
        return results

    # -- Loop ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick every ``poll_interval`` seconds until ``stop`` is called."""
        logger.info("Scheduler loop starting (poll_interval={}s)", self._poll_interval)
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        logger.info("Scheduler loop stopped")

    def stop(self) -> None:
        self._stop.set()
