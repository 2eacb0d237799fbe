"""Local filesystem state store.

Stores workspace runtime state as JSON files under the state directory::

    {state_dir}/workspaces/{name}/state.json
    {state_dir}/workspaces/{name}/last_action.log

Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.

Writes are atomic: data is written to a temporary file in the same directory,
then renamed to the target path.  This prevents corrupt reads if the process
crashes mid-write.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger
from pydantic import ValidationError

from provisioner.runtime.models.state import WorkspaceRuntimeState

STATE_FILE = "state.json"
LOG_FILE = "last_action.log"


class LocalStateStore:
    """Local filesystem implementation of the StateStore protocol."""

    def __init__(self, state_dir: str | Path) -> None:
        self._base = Path(state_dir) / "workspaces"

    def _workspace_dir(self, name: str) -> Path:
        return self._base / name

    # -- Write -----------------------------------------------------------------

    async def write_state(self, state: WorkspaceRuntimeState) -> None:
        data = state.model_dump_json(indent=2)
        path = self._workspace_dir(state.name) / STATE_FILE
        await to_thread.run_sync(partial(atomic_write, path, data))

    async def write_log(self, name: str, output: str) -> None:
        path = self._workspace_dir(name) / LOG_FILE
        await to_thread.run_sync(partial(atomic_write, path, output))

    # -- Read ------------------------------------------------------------------

    async def read_state(self, name: str) -> WorkspaceRuntimeState:
        raw = await to_thread.run_sync(partial(_read_file, self._workspace_dir(name) / STATE_FILE))
        return WorkspaceRuntimeState.model_validate_json(raw)

    async def list_states(self) -> list[WorkspaceRuntimeState]:
        paths = await to_thread.run_sync(self._state_paths)
        states: list[WorkspaceRuntimeState] = []
        for path in paths:
            try:
                raw = await to_thread.run_sync(partial(_read_file, path))
                states.append(WorkspaceRuntimeState.model_validate_json(raw))
            except (OSError, ValidationError):
                logger.opt(exception=True).warning("Skipping unreadable state record {}", path)
        return states

    async def read_log(self, name: str) -> str:
        return await to_thread.run_sync(partial(_read_file, self._workspace_dir(name) / LOG_FILE))

    # -- Utilities -------------------------------------------------------------

    async def exists(self, name: str) -> bool:
        path = self._workspace_dir(name) / STATE_FILE
        return await to_thread.run_sync(path.exists)

    async def delete(self, name: str) -> None:
        await to_thread.run_sync(partial(_rmtree, self._workspace_dir(name)))

    def _state_paths(self) -> list[Path]:
        if not self._base.is_dir():
            return []
        return sorted(p for p in self._base.glob(f"*/{STATE_FILE}") if p.is_file())


# -- Sync helpers (run in thread pool) -----------------------------------------


def atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    Ensures readers never see a partially-written file.  The temp file is
    created in the same directory so ``os.replace`` is atomic on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_file(path: Path) -> str:
    """Read file contents.  Raises ``FileNotFoundError`` if missing."""
    return path.read_text(encoding="utf-8")


def _rmtree(path: Path) -> None:
    """Remove directory tree.  No-op if path doesn't exist."""
    if path.exists():
        shutil.rmtree(path)
