"""Shared enumerations used across the provisioner runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Lifecycle ---------------------------------------------------------------


class LifecycleStatus(StrEnum):
    """Durable per-workspace lifecycle status."""

    IDLE = "idle"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"


class ActionKind(StrEnum):
    DEPLOY = "deploy"
    DESTROY = "destroy"


class TriggerSource(StrEnum):
    """What requested an action."""

    SCHEDULE = "schedule"
    MANUAL = "manual"


# -- Execution ---------------------------------------------------------------


class StepName(StrEnum):
    """Provisioning steps, in the order they may appear in a sequence."""

    INIT = "init"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"


# -- Templates ---------------------------------------------------------------


class SourceScheme(StrEnum):
    """Fetcher families, keyed off the template source URL."""

    FILE = "file"
    ARCHIVE = "archive"
    GIT = "git"
