"""Workspace lifecycle controller -- the deploy / destroy state machine.

States and transitions::

    idle | destroyed | failed  --deploy-->   deploying --ok--> deployed
                                                       --err-> failed
    deployed | failed         --destroy-->  destroying --ok--> destroyed
                                                       --err-> failed

Guards, in order:

1. The workspace exists (``NotFoundError``).
2. Scheduled triggers require ``enabled`` (``DisabledError``); manual
   requests bypass it.
3. No action holds the workspace lock (``BusyError``).  The lock is taken
   with a try-acquire; requests are never queued.
4. The action is allowed from the current status (``InvalidTransitionError``).

Once started, an action always runs to completion, failure or timeout --
there is no cancellation.  Failures are recorded on the runtime state and
returned to the requester; nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

import anyio
from loguru import logger

from provisioner.runtime.errors import (
    ActionTimeoutError,
    BusyError,
    DisabledError,
    ExecutionFailure,
    InvalidTransitionError,
    NotFoundError,
    ProvisionerError,
    ShuttingDownError,
)
from provisioner.runtime.execution.sequence import select_sequence
from provisioner.runtime.models.enums import ActionKind, LifecycleStatus, TriggerSource
from provisioner.runtime.models.state import ActionOutcome, WorkspaceSnapshot

if TYPE_CHECKING:
    from provisioner.runtime.execution.executor import ProvisioningExecutor
    from provisioner.runtime.execution.resolver import Materialized, WorkspaceResolver
    from provisioner.runtime.execution.sequence import CommandSequence
    from provisioner.runtime.registry import WorkspaceEntry, WorkspaceRegistry

ALLOWED_FROM: dict[ActionKind, frozenset[LifecycleStatus]] = {
    ActionKind.DEPLOY: frozenset({LifecycleStatus.IDLE, LifecycleStatus.DESTROYED, LifecycleStatus.FAILED}),
    ActionKind.DESTROY: frozenset({LifecycleStatus.DEPLOYED, LifecycleStatus.FAILED}),
}

IN_FLIGHT: dict[ActionKind, LifecycleStatus] = {
    ActionKind.DEPLOY: LifecycleStatus.DEPLOYING,
    ActionKind.DESTROY: LifecycleStatus.DESTROYING,
}

SETTLED: dict[ActionKind, LifecycleStatus] = {
    ActionKind.DEPLOY: LifecycleStatus.DEPLOYED,
    ActionKind.DESTROY: LifecycleStatus.DESTROYED,
}


def can_start(action: ActionKind, status: LifecycleStatus) -> bool:
    return status in ALLOWED_FROM[action]


def _now() -> datetime:
    return datetime.now().astimezone()


class LifecycleController:
    """Drives deploy / destroy actions for workspaces in a registry.

    Instantiated once per process.  Stateless beyond its collaborators; all
    per-workspace state lives on the registry entries.
    """

    def __init__(
        self,
        registry: WorkspaceRegistry,
        resolver: WorkspaceResolver,
        executor: ProvisioningExecutor,
        *,
        action_timeout: float | None = 3600.0,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._executor = executor
        self._action_timeout = action_timeout

    @property
    def registry(self) -> WorkspaceRegistry:
        return self._registry

    # -- Manual entry points ---------------------------------------------------

    async def deploy(self, name: str) -> ActionOutcome:
        """Manually deploy *name* and wait for the outcome."""
        return await self.wait(await self.start(name, ActionKind.DEPLOY))

    async def destroy(self, name: str) -> ActionOutcome:
        """Manually destroy *name* and wait for the outcome."""
        return await self.wait(await self.start(name, ActionKind.DESTROY))

    @staticmethod
    async def wait(task: asyncio.Task[ActionOutcome]) -> ActionOutcome:
        """Await an action started by ``start``.

        A caller going away (e.g. a dropped HTTP request) does not cancel the
        action itself.
        """
        return await asyncio.shield(task)

    # -- Scheduled entry point -------------------------------------------------

    async def dispatch(self, name: str, action: ActionKind, fired_minute: datetime) -> asyncio.Task | None:
        """Start a scheduled action, or drop it.

        Busy, disabled and not-applicable triggers are dropped (logged at
        DEBUG) and ``None`` is returned; the next poll re-evaluates.
        """
        try:
            return await self.start(name, action, trigger=TriggerSource.SCHEDULE, fired_minute=fired_minute)
        except (BusyError, DisabledError, InvalidTransitionError, ShuttingDownError) as exc:
            logger.debug("Scheduled {} for {} dropped: {}", action, name, exc)
            return None

    # -- Core ------------------------------------------------------------------

    async def start(
        self,
        name: str,
        action: ActionKind,
        *,
        trigger: TriggerSource = TriggerSource.MANUAL,
        fired_minute: datetime | None = None,
    ) -> asyncio.Task[ActionOutcome]:
        """Acquire the workspace lock, enter the in-flight state and spawn the action.

        Returns the task running the action; its result is the
        ``ActionOutcome``.  Raises ``NotFoundError``, ``DisabledError``,
        ``BusyError`` or ``InvalidTransitionError`` without side effects.
        """
        if self._registry.is_shutting_down:
            raise ShuttingDownError("Daemon is shutting down")

        entry = self._registry.get(name)
        if trigger == TriggerSource.SCHEDULE and not entry.definition.enabled:
            raise DisabledError(name)
        if entry.lock.locked():
            raise BusyError(name)
        if not can_start(action, entry.state.status):
            msg = f"Cannot {action} workspace '{name}' while it is {entry.state.status}"
            raise InvalidTransitionError(msg)

        # Uncontended here: nothing awaited since the locked() check.
        await entry.lock.acquire()
        self._registry.action_started()
        previous = entry.state.model_copy()
        try:
            started_at = _now()
            state = entry.state
            if fired_minute is not None:
                if action == ActionKind.DEPLOY:
                    state.last_deploy_fired_at = fired_minute
                else:
                    state.last_destroy_fired_at = fired_minute
            state.status = IN_FLIGHT[action]
            state.updated_at = started_at
            await self._registry.store.write_state(state)
        except BaseException:
            entry.state = previous
            entry.lock.release()
            self._registry.action_finished()
            raise

        logger.info("Workspace {}: {} started ({})", name, action, trigger)
        sequence = select_sequence(entry.definition, action)
        entry.task = asyncio.create_task(
            self._run(entry, action, trigger, sequence, started_at),
            name=f"{action}:{name}",
        )
        return entry.task

    async def _run(
        self,
        entry: WorkspaceEntry,
        action: ActionKind,
        trigger: TriggerSource,
        sequence: CommandSequence,
        started_at: datetime,
    ) -> ActionOutcome:
        """Run *sequence* under the held lock and apply the final transition."""
        log_lines: list[str] = []
        failed_step: str | None = None
        materialized: Materialized | None = None
        try:
            try:
                with anyio.fail_after(self._action_timeout):
                    materialized = await self._resolver.materialize(entry.definition)
                    working_dir = materialized.working_dir
                    for step in sequence.steps:
                        failed_step = step.name
                        result = await self._executor.run(step.name, working_dir, step.command)
                        log_lines.append(f"==> {step.name}" + (f" ({step.command})" if step.command else ""))
                        log_lines.append(result.output.rstrip())
                        if not result.success:
                            raise ExecutionFailure(
                                result.error or f"{step.name} failed",
                                step=step.name,
                                output=result.output,
                            )
                    failed_step = None
            except TimeoutError as exc:
                if isinstance(exc, ProvisionerError):
                    raise
                msg = f"{action} exceeded its {self._action_timeout}s time bound"
                raise ActionTimeoutError(msg) from None
        except ProvisionerError as exc:
            outcome = ActionOutcome(
                action=action,
                trigger=trigger,
                success=False,
                message=str(exc),
                error_kind=exc.kind,
                failed_step=failed_step,
                started_at=started_at,
                finished_at=_now(),
            )
            logger.warning("Workspace {}: {} failed ({}): {}", entry.name, action, exc.kind, exc)
        except Exception as exc:
            logger.exception("Workspace {}: {} crashed", entry.name, action)
            outcome = ActionOutcome(
                action=action,
                trigger=trigger,
                success=False,
                message=f"{type(exc).__name__}: {exc}",
                error_kind=ExecutionFailure.kind,
                failed_step=failed_step,
                started_at=started_at,
                finished_at=_now(),
            )
        else:
            outcome = ActionOutcome(
                action=action,
                trigger=trigger,
                success=True,
                message=f"{action} completed",
                started_at=started_at,
                finished_at=_now(),
            )
            logger.info("Workspace {}: {} succeeded", entry.name, action)

        try:
            await self._finish(entry, action, outcome, log_lines, materialized)
        finally:
            entry.task = None
            entry.lock.release()
            self._registry.action_finished()
        if entry.removed and not entry.busy:
            await self._registry.discard(entry.name)
        return outcome

    async def _finish(
        self,
        entry: WorkspaceEntry,
        action: ActionKind,
        outcome: ActionOutcome,
        log_lines: list[str],
        materialized: Materialized | None,
    ) -> None:
        state = entry.state
        if outcome.success:
            state.status = SETTLED[action]
            if action == ActionKind.DEPLOY:
                state.last_deployed_at = outcome.finished_at
                state.deployed_template = materialized.template if materialized else None
                state.deployed_template_hash = materialized.template_hash if materialized else None
            else:
                state.last_destroyed_at = outcome.finished_at
                state.deployed_template = None
                state.deployed_template_hash = None
        else:
            state.status = LifecycleStatus.FAILED
            log_lines.append(f"==> {outcome.error_kind}: {outcome.message}")
        state.last_outcome = outcome
        state.updated_at = outcome.finished_at

        store = self._registry.store
        await store.write_state(state)
        await store.write_log(entry.name, "\n".join(line for line in log_lines if line) + "\n")

    # -- Queries ---------------------------------------------------------------

    def status(self, name: str) -> WorkspaceSnapshot:
        """Current runtime snapshot for *name*.  Raises ``NotFoundError``."""
        return self._registry.get(name).snapshot()

    async def describe(self, name: str) -> WorkspaceSnapshot:
        """``status`` plus whether the deployed template has changed since.

        Raises ``NotFoundError``.
        """
        snapshot = self.status(name)
        snapshot.template_outdated = await self._template_outdated(snapshot)
        return snapshot

    async def _template_outdated(self, snapshot: WorkspaceSnapshot) -> bool | None:
        deployed = snapshot.state.deployed_template
        if deployed is None:
            return None
        if snapshot.template != deployed:
            return True
        try:
            record = await self._resolver.templates.get(deployed)
        except NotFoundError:
            return True
        return record.content_hash != snapshot.state.deployed_template_hash

    async def logs(self, name: str) -> str:
        """Output of the most recent action (empty if none ran yet)."""
        self._registry.get(name)
        try:
            return await self._registry.store.read_log(name)
        except FileNotFoundError:
            return ""
