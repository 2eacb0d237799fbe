"""Command sequences for deploy / destroy actions.

An action runs either the tool's default sequence or a workspace-specific
custom one.  The variant is selected once per action; the lifecycle
controller then runs ``steps`` uniformly without caring which it got.

A custom sequence may override only some steps -- the rest keep the default
invocation (``Step.command is None``).
"""

from __future__ import annotations

from dataclasses import dataclass

from provisioner.runtime.models.enums import ActionKind, StepName
from provisioner.runtime.models.workspace import WorkspaceDefinition

DEFAULT_STEPS: dict[ActionKind, tuple[StepName, ...]] = {
    ActionKind.DEPLOY: (StepName.INIT, StepName.PLAN, StepName.APPLY),
    ActionKind.DESTROY: (StepName.INIT, StepName.DESTROY),
}


@dataclass(frozen=True)
class Step:
    name: StepName
    command: str | None = None
    """Opaque command line replacing the default tool invocation, if any."""


@dataclass(frozen=True)
class DefaultSequence:
    action: ActionKind

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(Step(name) for name in DEFAULT_STEPS[self.action])


@dataclass(frozen=True)
class CustomSequence:
    action: ActionKind
    init_command: str | None = None
    plan_command: str | None = None
    apply_command: str | None = None
    destroy_command: str | None = None

    @property
    def steps(self) -> tuple[Step, ...]:
        overrides = {
            StepName.INIT: self.init_command,
            StepName.PLAN: self.plan_command,
            StepName.APPLY: self.apply_command,
            StepName.DESTROY: self.destroy_command,
        }
        return tuple(Step(name, overrides[name]) for name in DEFAULT_STEPS[self.action])


CommandSequence = DefaultSequence | CustomSequence


def select_sequence(definition: WorkspaceDefinition, action: ActionKind) -> CommandSequence:
    """Pick the sequence variant for *action* on *definition*."""
    if action == ActionKind.DEPLOY and definition.custom_deploy is not None:
        custom = definition.custom_deploy
        return CustomSequence(
            action=action,
            init_command=custom.init_command,
            plan_command=custom.plan_command,
            apply_command=custom.apply_command,
        )
    if action == ActionKind.DESTROY and definition.custom_destroy is not None:
        custom = definition.custom_destroy
        return CustomSequence(
            action=action,
            init_command=custom.init_command,
            destroy_command=custom.destroy_command,
        )
    return DefaultSequence(action)
