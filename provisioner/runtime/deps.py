"""FastAPI dependency injection helpers.

Provides typed dependencies for route handlers via ``Annotated`` aliases.
The runtime components are created in the app lifespan and stored on
``app.state``; a dependency raises HTTP 503 when its component is missing
(the daemon is still starting, or has already shut down).
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status

from provisioner.runtime.managers.lifecycle import LifecycleController
from provisioner.runtime.managers.templates import TemplateRegistry
from provisioner.runtime.scheduler import SchedulerLoop


def _component(request: Request, attr: str, label: str) -> Any:
    component = getattr(request.app.state, attr, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not available.",
        )
    return component


def get_controller(request: Request) -> LifecycleController:
    return _component(request, "controller", "Lifecycle controller")


def get_templates(request: Request) -> TemplateRegistry:
    return _component(request, "templates", "Template registry")


def get_scheduler(request: Request) -> SchedulerLoop:
    return _component(request, "scheduler", "Scheduler")


# -- Annotated type aliases for concise route signatures ---------------------

Controller = Annotated[LifecycleController, Depends(get_controller)]
"""Annotated dependency: the process-wide lifecycle controller."""

Templates = Annotated[TemplateRegistry, Depends(get_templates)]
"""Annotated dependency: the template registry."""

Scheduler = Annotated[SchedulerLoop, Depends(get_scheduler)]
"""Annotated dependency: the scheduler loop (for forced reloads)."""
