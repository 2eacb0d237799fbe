"""Config source -- where workspace definitions come from.

The runtime only needs ``load()``: return every current definition plus the
names whose definition exists but could not be read.  It is called on each
poll, so edits, additions and removals are picked up without a restart.
An unreadable definition is not a removal: the registry keeps the last good
one and its runtime state until the file is fixed or deleted.

``DirectoryConfigSource`` reads the on-disk layout::

    {workspaces_dir}/{name}/config.json     definition (name = directory name)
    {workspaces_dir}/{name}/*.tf            optional inline configuration
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger
from pydantic import ValidationError

from provisioner.runtime.models.workspace import WorkspaceDefinition

CONFIG_FILE = "config.json"


@dataclass
class LoadedDefinitions:
    definitions: list[WorkspaceDefinition] = field(default_factory=list)
    unreadable: set[str] = field(default_factory=set)
    """Workspaces whose config exists but failed to read or validate."""


@runtime_checkable
class ConfigSource(Protocol):
    def load(self) -> LoadedDefinitions:
        """Return all workspace definitions.  Called from a worker thread."""
        ...


class DirectoryConfigSource:
    """One sub-directory per workspace, each with a ``config.json``.

    Directories without a config are not workspaces.  A config that cannot
    be read or validated is reported in ``unreadable`` with a warning; one
    broken workspace never hides the others.
    """

    def __init__(self, workspaces_dir: str | Path) -> None:
        self._root = Path(workspaces_dir)

    @property
    def root(self) -> Path:
        return self._root

    def load(self) -> LoadedDefinitions:
        result = LoadedDefinitions()
        if not self._root.is_dir():
            logger.warning("Workspaces directory {} does not exist", self._root)
            return result

        for ws_dir in sorted(p for p in self._root.iterdir() if p.is_dir()):
            config_path = ws_dir / CONFIG_FILE
            if not config_path.is_file():
                continue
            definition = self._load_one(ws_dir, config_path)
            if definition is None:
                result.unreadable.add(ws_dir.name)
            else:
                result.definitions.append(definition)
        return result

    def _load_one(self, ws_dir: Path, config_path: Path) -> WorkspaceDefinition | None:
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring config for workspace {}: cannot read {}: {}", ws_dir.name, config_path, exc)
            return None
        if not isinstance(raw, dict):
            logger.warning("Ignoring config for workspace {}: {} is not a JSON object", ws_dir.name, config_path)
            return None

        declared = raw.get("name")
        if declared and declared != ws_dir.name:
            logger.warning("Workspace {} declares name '{}'; using directory name", ws_dir.name, declared)

        try:
            return WorkspaceDefinition.model_validate({**raw, "name": ws_dir.name, "path": ws_dir})
        except ValidationError as exc:
            logger.warning("Ignoring config for workspace {}: invalid config: {}", ws_dir.name, exc)
            return None


class StaticConfigSource:
    """Fixed, replaceable list of definitions (embedding and tests)."""

    def __init__(self, definitions: list[WorkspaceDefinition] | None = None) -> None:
        self.definitions = list(definitions or [])

    def load(self) -> LoadedDefinitions:
        return LoadedDefinitions(list(self.definitions))
