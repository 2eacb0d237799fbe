"""State store interface for workspace runtime state.

The store holds one small JSON record per workspace plus the captured output
of its most recent action.  Writes must be atomic replaces: readers never
observe a partially-written record, and records survive process restart.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from provisioner.runtime.models.state import WorkspaceRuntimeState


@runtime_checkable
class StateStore(Protocol):
    """Async protocol for reading and writing workspace runtime state.

    Storage layout (keyed by workspace name):
        {root}/workspaces/{name}/state.json
        {root}/workspaces/{name}/last_action.log
    """

    async def write_state(self, state: WorkspaceRuntimeState) -> None:
        """Atomically replace the state record for ``state.name``."""
        ...

    async def read_state(self, name: str) -> WorkspaceRuntimeState:
        """Read a state record.  Raises ``FileNotFoundError`` if not found."""
        ...

    async def list_states(self) -> list[WorkspaceRuntimeState]:
        """Read every persisted state record."""
        ...

    async def write_log(self, name: str, output: str) -> None:
        """Atomically replace the most recent action output."""
        ...

    async def read_log(self, name: str) -> str:
        """Read the most recent action output.  Raises ``FileNotFoundError`` if none."""
        ...

    async def exists(self, name: str) -> bool:
        """Check whether state exists for the given workspace."""
        ...

    async def delete(self, name: str) -> None:
        """Delete all stored data for a workspace.  No-op if not found."""
        ...
