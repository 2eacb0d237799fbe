"""Workspace runtime state models.

``WorkspaceRuntimeState`` is the durable record persisted after every
lifecycle transition.  Exactly one exists per workspace name; it is the
serialization point the lifecycle controller guards with a per-workspace
lock.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from provisioner.runtime.models.enums import ActionKind, LifecycleStatus, TriggerSource


class ActionOutcome(BaseModel):
    """Result of the most recent deploy / destroy attempt."""

    action: ActionKind
    trigger: TriggerSource
    success: bool
    message: str = ""
    error_kind: str | None = Field(default=None, description="Stable error kind on failure, e.g. 'Timeout'")
    failed_step: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class WorkspaceRuntimeState(BaseModel):
    """Persisted lifecycle status and history for one workspace."""

    name: str
    status: LifecycleStatus = LifecycleStatus.IDLE

    # Minute-resolution trigger memory used to de-duplicate fires.
    last_deploy_fired_at: datetime | None = None
    last_destroy_fired_at: datetime | None = None

    last_outcome: ActionOutcome | None = None
    last_deployed_at: datetime | None = None
    last_destroyed_at: datetime | None = None
    updated_at: datetime | None = None

    # Template the live deployment was materialized from; None for inline
    # configuration or when nothing is deployed.
    deployed_template: str | None = None
    deployed_template_hash: str | None = None

    @property
    def in_flight(self) -> bool:
        return self.status in (LifecycleStatus.DEPLOYING, LifecycleStatus.DESTROYING)


class WorkspaceSnapshot(BaseModel):
    """Point-in-time view of a workspace for status queries."""

    name: str
    enabled: bool
    description: str = ""
    template: str | None = None
    deploy_schedule: list[str] = Field(default_factory=list)
    destroy_schedule: list[str] = Field(default_factory=list)
    schedule_errors: list[str] = Field(default_factory=list)
    busy: bool = False
    next_deploy_at: datetime | None = None
    next_destroy_at: datetime | None = None
    template_outdated: bool | None = Field(
        default=None,
        description="True when the template changed since the last deploy; None if not deployed from one",
    )
    state: WorkspaceRuntimeState
