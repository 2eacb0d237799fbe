"""Workspace endpoints (RPC-style).

Actions use POST; reads use GET.  Workspaces themselves are defined in the
config directory, not through the API.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Response, status

from provisioner.runtime.deps import Controller, Scheduler
from provisioner.runtime.models.api import ActionAccepted, LogsResponse, ReloadResponse
from provisioner.runtime.models.enums import ActionKind
from provisioner.runtime.models.state import ActionOutcome, WorkspaceSnapshot

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


async def _run_action(
    controller: Controller,
    name: str,
    action: ActionKind,
    wait: bool,
    response: Response,
) -> ActionOutcome | ActionAccepted:
    task = await controller.start(name, action)
    if wait:
        return await controller.wait(task)
    response.status_code = status.HTTP_202_ACCEPTED
    entry = controller.registry.get(name)
    return ActionAccepted(name=name, action=action, status=entry.state.status)


@router.post("/{name}/deploy")
async def deploy_workspace(
    name: str,
    controller: Controller,
    response: Response,
    wait: bool = Query(True, description="Block until the action finishes."),
) -> ActionOutcome | ActionAccepted:
    """Deploy a workspace now, bypassing its schedule.

    Fails with 409 if an action is already in flight.  A failed deploy is
    still a 200 response; check ``success`` on the outcome.
    """
    return await _run_action(controller, name, ActionKind.DEPLOY, wait, response)


@router.post("/{name}/destroy")
async def destroy_workspace(
    name: str,
    controller: Controller,
    response: Response,
    wait: bool = Query(True, description="Block until the action finishes."),
) -> ActionOutcome | ActionAccepted:
    """Destroy a workspace now, bypassing its schedule."""
    return await _run_action(controller, name, ActionKind.DESTROY, wait, response)


@router.get("/list", response_model=list[WorkspaceSnapshot])
async def list_workspaces(controller: Controller) -> list[WorkspaceSnapshot]:
    """List all known workspaces, sorted by name."""
    return [await controller.describe(entry.name) for entry in controller.registry.entries()]


@router.get("/{name}/status", response_model=WorkspaceSnapshot)
async def workspace_status(name: str, controller: Controller) -> WorkspaceSnapshot:
    return await controller.describe(name)


@router.get("/{name}/logs", response_model=LogsResponse)
async def workspace_logs(name: str, controller: Controller) -> LogsResponse:
    """Output of the most recent action."""
    return LogsResponse(name=name, output=await controller.logs(name))


@router.post("/reload", response_model=ReloadResponse)
async def reload_workspaces(scheduler: Scheduler) -> ReloadResponse:
    """Re-read workspace definitions immediately instead of waiting for the next poll."""
    summary = await scheduler.reload()
    return ReloadResponse(
        added=summary.added,
        updated=summary.updated,
        removed=summary.removed,
        deferred=summary.deferred,
        retained=summary.retained,
    )
