"""API request / response schemas.

Thin schemas between HTTP and the managers.  Domain models
(``TemplateRecord``, ``WorkspaceSnapshot``, ``ActionOutcome``) are returned
as-is where they already fit; the schemas here cover request bodies and
responses that have no domain counterpart.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from provisioner.runtime.models.enums import ActionKind, LifecycleStatus
from provisioner.runtime.models.template import TemplateRecord

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Body of every non-2xx response raised from a domain error."""

    kind: str = Field(description="Stable error kind, e.g. 'Busy' or 'NotFound'")
    message: str


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateCreate(BaseModel):
    name: str
    source_url: str
    sub_path: str = ""
    ref: str = Field(default="", description="Branch, tag or commit; empty means 'main'")
    description: str = ""


class TemplateValidateResponse(BaseModel):
    name: str
    valid: bool = True
    files: list[str] = Field(default_factory=list)


class TemplateUpdateResult(BaseModel):
    """Per-template result of a bulk update."""

    name: str
    success: bool
    changed: bool = False
    record: TemplateRecord | None = None
    error_kind: str | None = None
    message: str = ""


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


class ActionAccepted(BaseModel):
    """Returned when an action was started without waiting for it."""

    name: str
    action: ActionKind
    status: LifecycleStatus


class LogsResponse(BaseModel):
    name: str
    output: str = ""


class ReloadResponse(BaseModel):
    added: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    retained: list[str] = Field(default_factory=list)
