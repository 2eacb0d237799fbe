"""Workspace definition model.

A workspace is a named directory of infrastructure configuration plus the
schedules that deploy and destroy it.  Definitions are owned by the config
source and re-read on every poll; the runtime treats them as read-only.

The infrastructure configuration itself is opaque here -- it is either the
workspace's own directory (``path``) or a registered template instantiated
with variable overrides (``template``).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_name(value: str, what: str = "name") -> str:
    """Reject names that are not safe to use as a single path segment."""
    if not _NAME_RE.match(value) or value in (".", ".."):
        msg = f"{what} '{value}' must be filesystem-safe (letters, digits, '.', '_', '-')"
        raise ValueError(msg)
    return value


def normalize_schedule(value: Any, *, allow_false: bool) -> list[str]:
    """Normalize a schedule field to a list of expressions.

    Accepts a single string, a list of strings, or -- where ``allow_false`` --
    the literal ``false`` meaning "no schedule" (permanent deployment).
    """
    if value is None:
        return []
    if isinstance(value, bool):
        if value is False and allow_false:
            return []
        msg = "schedule boolean must be false (true is invalid)" if allow_false else "schedule cannot be a boolean"
        raise ValueError(msg)
    if isinstance(value, str):
        return [value]
    if isinstance(value, list | tuple):
        for i, item in enumerate(value):
            if not isinstance(item, str):
                msg = f"schedule array must contain strings, got {type(item).__name__} at index {i}"
                raise ValueError(msg)  # noqa: TRY004
        return list(value)
    msg = f"schedule must be a string or array of strings, got {type(value).__name__}"
    raise ValueError(msg)


def _check_command(field: str, value: str | None) -> None:
    if value is not None and not value.strip():
        msg = f"{field} cannot be empty or whitespace-only"
        raise ValueError(msg)


# -- Components --------------------------------------------------------------


class TemplateRef(BaseModel):
    """Instantiate a registered template with variable overrides."""

    name: str
    variables: dict[str, Any] = Field(default_factory=dict)


class CustomDeploy(BaseModel):
    """Opaque command lines replacing the default init / plan / apply steps.

    Steps left unset keep the default tool invocation.
    """

    init_command: str | None = None
    plan_command: str | None = None
    apply_command: str | None = None

    @model_validator(mode="after")
    def _check(self) -> CustomDeploy:
        if self.init_command is None and self.plan_command is None and self.apply_command is None:
            msg = "at least one custom command must be specified (init_command, plan_command, or apply_command)"
            raise ValueError(msg)
        _check_command("init_command", self.init_command)
        _check_command("plan_command", self.plan_command)
        _check_command("apply_command", self.apply_command)
        return self


class CustomDestroy(BaseModel):
    """Opaque command lines replacing the default init / destroy steps."""

    init_command: str | None = None
    destroy_command: str | None = None

    @model_validator(mode="after")
    def _check(self) -> CustomDestroy:
        if self.init_command is None and self.destroy_command is None:
            msg = "at least one custom command must be specified (init_command or destroy_command)"
            raise ValueError(msg)
        _check_command("init_command", self.init_command)
        _check_command("destroy_command", self.destroy_command)
        return self


# -- Top-level definition ----------------------------------------------------


class WorkspaceDefinition(BaseModel):
    """One workspace as read from the config source."""

    name: str
    enabled: bool = True
    deploy_schedule: list[str]
    destroy_schedule: list[str] = Field(default_factory=list)
    description: str = ""
    template: TemplateRef | None = None
    custom_deploy: CustomDeploy | None = None
    custom_destroy: CustomDestroy | None = None
    path: Path | None = Field(default=None, description="Directory holding inline configuration, if any")

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_name(v, "workspace name")

    @field_validator("template", mode="before")
    @classmethod
    def _template_shorthand(cls, v: Any) -> Any:
        # "template": "t1" is shorthand for {"name": "t1"}.
        if isinstance(v, str):
            return {"name": v} if v else None
        return v

    @field_validator("deploy_schedule", mode="before")
    @classmethod
    def _normalize_deploy(cls, v: Any) -> list[str]:
        schedules = normalize_schedule(v, allow_false=False)
        if not schedules:
            msg = "deploy_schedule must contain at least one expression"
            raise ValueError(msg)
        return schedules

    @field_validator("destroy_schedule", mode="before")
    @classmethod
    def _normalize_destroy(cls, v: Any) -> list[str]:
        return normalize_schedule(v, allow_false=True)

    @property
    def template_name(self) -> str | None:
        return self.template.name if self.template else None
