"""In-process workspace registry.

Maps each workspace name to its current definition, compiled schedules,
runtime state and a lock handle.  The lock is the serialization point for
deploy / destroy: it is only ever taken with a non-blocking try-acquire, so
schedule ticks never wait on an in-flight action.

Lifecycle:

- ``load`` (startup): read persisted states; any found mid-action are
  converted to ``failed`` with an ``Interrupted`` cause.
- ``sync`` (every poll): apply added / edited / removed definitions.
- ``begin_shutdown`` + ``wait_until_drained`` + ``flush`` (shutdown).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from provisioner.runtime.cron import ScheduleSet, compile_schedule_set
from provisioner.runtime.errors import InterruptedActionError, NotFoundError
from provisioner.runtime.models.enums import ActionKind, LifecycleStatus, TriggerSource
from provisioner.runtime.models.state import ActionOutcome, WorkspaceRuntimeState, WorkspaceSnapshot

if TYPE_CHECKING:
    from collections.abc import Iterable

    from provisioner.runtime.models.workspace import WorkspaceDefinition
    from provisioner.runtime.store.base import StateStore


@dataclass
class WorkspaceEntry:
    """Everything the runtime holds for one workspace."""

    definition: WorkspaceDefinition
    state: WorkspaceRuntimeState
    deploy_schedule: ScheduleSet = field(default_factory=ScheduleSet)
    destroy_schedule: ScheduleSet = field(default_factory=ScheduleSet)
    schedule_errors: list[str] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task | None = None
    removed: bool = False
    """Definition disappeared while an action was in flight; drop after it ends."""

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def apply_definition(self, definition: WorkspaceDefinition) -> None:
        """Replace the definition in place, recompiling its schedules."""
        self.definition = definition
        self.deploy_schedule, deploy_errors = compile_schedule_set(definition.deploy_schedule)
        self.destroy_schedule, destroy_errors = compile_schedule_set(definition.destroy_schedule)
        self.schedule_errors = [f"deploy: {e}" for e in deploy_errors] + [f"destroy: {e}" for e in destroy_errors]
        for error in self.schedule_errors:
            logger.warning("Workspace {}: schedule disabled -- {}", definition.name, error)

    def snapshot(self, now: datetime | None = None) -> WorkspaceSnapshot:
        now = now or datetime.now().astimezone()
        return WorkspaceSnapshot(
            name=self.name,
            enabled=self.definition.enabled,
            description=self.definition.description,
            template=self.definition.template_name,
            deploy_schedule=self.deploy_schedule.sources,
            destroy_schedule=self.destroy_schedule.sources,
            schedule_errors=list(self.schedule_errors),
            busy=self.busy,
            next_deploy_at=self.deploy_schedule.next_fire(now) if self.definition.enabled else None,
            next_destroy_at=self.destroy_schedule.next_fire(now) if self.definition.enabled else None,
            state=self.state.model_copy(deep=True),
        )


@dataclass
class SyncSummary:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    """Removed from config but still running; state is dropped once idle."""
    retained: list[str] = field(default_factory=list)
    """Config present but unreadable; entry and state kept unchanged."""


class WorkspaceRegistry:
    """Process-scoped registry of workspace runtime entries.

    Passed explicitly to the scheduler loop, the lifecycle controller and the
    API layer -- there is no module-level instance.
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._entries: dict[str, WorkspaceEntry] = {}
        self._persisted: dict[str, WorkspaceRuntimeState] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no actions).
        self._shutting_down = False

    @property
    def store(self) -> StateStore:
        return self._store

    # -- Startup ---------------------------------------------------------------

    async def load(self) -> int:
        """Load persisted states and recover actions interrupted by a crash.

        Returns the number of workspaces recovered from ``deploying`` /
        ``destroying`` to ``failed``.
        """
        recovered = 0
        for state in await self._store.list_states():
            if state.in_flight:
                action = ActionKind.DEPLOY if state.status == LifecycleStatus.DEPLOYING else ActionKind.DESTROY
                error = InterruptedActionError(f"{action} was interrupted by a daemon restart; outcome unknown")
                now = datetime.now().astimezone()
                state.status = LifecycleStatus.FAILED
                state.last_outcome = ActionOutcome(
                    action=action,
                    trigger=state.last_outcome.trigger if state.last_outcome else TriggerSource.SCHEDULE,
                    success=False,
                    message=str(error),
                    error_kind=error.kind,
                    started_at=state.last_outcome.started_at if state.last_outcome else None,
                    finished_at=now,
                )
                state.updated_at = now
                await self._store.write_state(state)
                logger.warning("Startup recovery: workspace {} was {} -- marked failed", state.name, action)
                recovered += 1
            self._persisted[state.name] = state
        logger.info("Registry: loaded {} persisted states ({} recovered)", len(self._persisted), recovered)
        return recovered

    # -- Reconciliation --------------------------------------------------------

    async def sync(
        self,
        definitions: Iterable[WorkspaceDefinition],
        unreadable: Iterable[str] = (),
    ) -> SyncSummary:
        """Reconcile entries with the latest definitions from the config source.

        Names in *unreadable* still exist in the config but failed to load.
        They keep their current entry (last good definition) and persisted
        state; only names absent from both are removed.
        """
        summary = SyncSummary()
        incoming = {d.name: d for d in definitions}
        retained = set(unreadable) - incoming.keys()

        for name, definition in incoming.items():
            entry = self._entries.get(name)
            if entry is None:
                state = self._persisted.pop(name, None)
                is_new = state is None
                if state is None:
                    state = WorkspaceRuntimeState(name=name, updated_at=datetime.now().astimezone())
                entry = WorkspaceEntry(definition=definition, state=state)
                entry.apply_definition(definition)
                self._entries[name] = entry
                if is_new:
                    await self._store.write_state(state)
                summary.added.append(name)
                logger.info("Workspace added: {} (status={})", name, state.status)
            else:
                entry.removed = False
                if entry.definition != definition:
                    entry.apply_definition(definition)
                    summary.updated.append(name)
                    logger.info("Workspace updated: {}", name)

        for name in sorted(retained):
            entry = self._entries.get(name)
            if entry is not None:
                entry.removed = False
            summary.retained.append(name)
            logger.warning("Workspace {}: config unreadable, keeping last good definition and state", name)

        for name in [n for n in self._entries if n not in incoming and n not in retained]:
            entry = self._entries[name]
            if entry.busy:
                entry.removed = True
                summary.deferred.append(name)
                logger.info("Workspace {} removed from config; action in flight, deferring cleanup", name)
                continue
            await self.discard(name)
            summary.removed.append(name)

        # States persisted for workspaces that no longer exist.
        for name in [n for n in self._persisted if n not in retained]:
            del self._persisted[name]
            await self._store.delete(name)
            logger.info("Dropping state for unknown workspace {}", name)

        return summary

    async def discard(self, name: str) -> None:
        """Forget a workspace and delete its persisted state.  Caller checks the lock."""
        self._entries.pop(name, None)
        await self._store.delete(name)
        logger.info("Workspace removed: {}", name)

    # -- Query -----------------------------------------------------------------

    def get(self, name: str) -> WorkspaceEntry:
        """Return the entry for *name*.  Raises ``NotFoundError`` if unknown."""
        entry = self._entries.get(name)
        if entry is None or entry.removed:
            raise NotFoundError("Workspace", name)
        return entry

    def entries(self) -> list[WorkspaceEntry]:
        """Snapshot of live entries, sorted by name."""
        return [self._entries[n] for n in sorted(self._entries) if not self._entries[n].removed]

    def template_references(self, template_name: str) -> list[str]:
        """Names of workspaces whose definition references *template_name*."""
        return sorted(e.name for e in self._entries.values() if e.definition.template_name == template_name)

    @property
    def active_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.busy)

    # -- Action bookkeeping ----------------------------------------------------

    def action_started(self) -> None:
        self._drain_event.clear()

    def action_finished(self) -> None:
        if self.active_count == 0:
            self._drain_event.set()

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New actions are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new actions")
        if self.active_count == 0:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no action holds a workspace lock.

        Returns ``True`` if drained, ``False`` if *timeout* expired first.
        """
        if self.active_count == 0:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} actions still running",
                timeout,
                self.active_count,
            )
            return False
        else:
            return True

    async def flush(self) -> None:
        """Persist every entry's state (shutdown)."""
        for entry in self._entries.values():
            await self._store.write_state(entry.state)
        logger.info("Registry: flushed {} workspace states", len(self._entries))
