"""Data models for the provisioner runtime."""

from provisioner.runtime.models.api import (
    ActionAccepted,
    ErrorResponse,
    LogsResponse,
    ReloadResponse,
    TemplateCreate,
    TemplateUpdateResult,
    TemplateValidateResponse,
)
from provisioner.runtime.models.enums import (
    ActionKind,
    LifecycleStatus,
    SourceScheme,
    StepName,
    TriggerSource,
)
from provisioner.runtime.models.state import ActionOutcome, WorkspaceRuntimeState, WorkspaceSnapshot
from provisioner.runtime.models.template import TemplateIndex, TemplateRecord
from provisioner.runtime.models.workspace import (
    CustomDeploy,
    CustomDestroy,
    TemplateRef,
    WorkspaceDefinition,
)

__all__ = [
    # API schemas
    "ActionAccepted",
    # Enums
    "ActionKind",
    # State
    "ActionOutcome",
    # Workspace
    "CustomDeploy",
    "CustomDestroy",
    "ErrorResponse",
    "LifecycleStatus",
    "LogsResponse",
    "ReloadResponse",
    "SourceScheme",
    "StepName",
    "TemplateCreate",
    # Template
    "TemplateIndex",
    "TemplateRecord",
    "TemplateRef",
    "TemplateUpdateResult",
    "TemplateValidateResponse",
    "TriggerSource",
    "WorkspaceDefinition",
    "WorkspaceRuntimeState",
    "WorkspaceSnapshot",
]
