"""Configuration resolver -- turns a workspace definition into a working
directory the provisioning tool can run in.

Resolution order:

1. The workspace directory holds its own configuration (any ``*.tf`` /
   ``*.tf.json`` file): copy it in.  Inline configuration wins over a
   template reference.
2. Otherwise a template is referenced: ``TemplateRegistry.resolve`` copies
   the cached template plus variable overrides.
3. Neither: ``ValidationFailedError``.

The target is always ``{deployments_dir}/{name}``, so tool state written by
one action is visible to the next.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread

from provisioner.runtime.errors import ValidationFailedError
from provisioner.runtime.execution.workdir import copy_configuration, write_variables

if TYPE_CHECKING:
    from provisioner.runtime.managers.templates import TemplateRegistry
    from provisioner.runtime.models.workspace import WorkspaceDefinition

# Files in a workspace directory that belong to the daemon, not the tool.
WORKSPACE_METADATA = frozenset({"config.json"})


@dataclass(frozen=True)
class Materialized:
    """A prepared working directory and the template it came from, if any."""

    working_dir: Path
    template: str | None = None
    template_hash: str | None = None


def has_inline_configuration(path: Path | None) -> bool:
    if path is None or not path.is_dir():
        return False
    return any(p.is_file() for pattern in ("*.tf", "*.tf.json") for p in path.glob(pattern))


class WorkspaceResolver:
    def __init__(self, templates: TemplateRegistry, deployments_dir: str | Path) -> None:
        self._templates = templates
        self._deployments_dir = Path(deployments_dir)

    @property
    def templates(self) -> TemplateRegistry:
        return self._templates

    def working_dir(self, name: str) -> Path:
        return self._deployments_dir / name

    async def resolve(self, definition: WorkspaceDefinition) -> Path:
        """Materialize *definition* and return its working directory."""
        return (await self.materialize(definition)).working_dir

    async def materialize(self, definition: WorkspaceDefinition) -> Materialized:
        """Materialize *definition*, reporting the template content hash used."""
        target = self.working_dir(definition.name)
        inline = await to_thread.run_sync(partial(has_inline_configuration, definition.path))

        if inline:
            variables = definition.template.variables if definition.template else {}
            await to_thread.run_sync(partial(_copy_inline, definition.path, target, variables))
            return Materialized(target)

        if definition.template is not None:
            record = await self._templates.get(definition.template.name)
            await self._templates.resolve(record.name, definition.template.variables, target_dir=target)
            return Materialized(target, template=record.name, template_hash=record.content_hash)

        msg = f"Workspace '{definition.name}' has no configuration files and no template"
        raise ValidationFailedError(msg)


def _copy_inline(src: Path, dst: Path, variables: dict) -> None:
    copy_configuration(src, dst, exclude=WORKSPACE_METADATA)
    write_variables(dst, variables)
