"""Working-directory materialization.

Every workspace deploys from a persistent directory
``{state_dir}/deployments/{name}/``.  Configuration (inline or from a
template) is copied in before each action, but the provisioning tool's own
state -- ``terraform.tfstate``, the ``.terraform/`` cache, saved plans -- is
never overwritten, so a destroy sees what the previous deploy created.

Variable overrides are written to an auto-loaded ``*.auto.tfvars.json``.

All helpers here are synchronous; callers run them via
``anyio.to_thread.run_sync``.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
from pathlib import Path
from typing import Any

VARIABLES_FILE = "provisioner.auto.tfvars.json"

_STATE_FILES = frozenset({"terraform.tfstate", "terraform.tfstate.backup", ".terraform.lock.hcl"})
_STATE_DIRS = frozenset({".terraform"})


def is_tool_state(rel_path: str) -> bool:
    """True for files the provisioning tool owns inside a working directory."""
    parts = Path(rel_path).parts
    if not parts:
        return False
    if parts[0] in _STATE_DIRS:
        return True
    return rel_path in _STATE_FILES or rel_path.endswith(".tfplan")


def copy_configuration(src: Path, dst: Path, *, exclude: frozenset[str] = frozenset()) -> int:
    """Mirror configuration files from *src* into *dst*, preserving tool state.

    Top-level names in *exclude* are skipped (e.g. the workspace's own
    ``config.json``).  Files in *dst* that are not tool state and no longer
    exist in *src* are deleted.  Returns the number of files copied.
    """
    dst.mkdir(parents=True, exist_ok=True)
    copied = 0
    kept: set[str] = set()
    for root, dirs, files in os.walk(src):
        rel_root = Path(root).relative_to(src)
        dirs[:] = sorted(d for d in dirs if not is_tool_state((rel_root / d).as_posix()) and d != ".git")
        if rel_root == Path("."):
            dirs[:] = [d for d in dirs if d not in exclude]
        (dst / rel_root).mkdir(parents=True, exist_ok=True)
        for filename in sorted(files):
            rel = (rel_root / filename).as_posix()
            if is_tool_state(rel) or (rel_root == Path(".") and filename in exclude):
                continue
            shutil.copy2(Path(root) / filename, dst / rel)
            kept.add(rel)
            copied += 1
    prune_stale(dst, kept)
    return copied


def prune_stale(dst: Path, kept: set[str]) -> int:
    """Delete files under *dst* not listed in *kept*, leaving tool state alone.

    Directories left empty are removed.  Returns the number of files deleted.
    """
    removed = 0
    for root, dirs, files in os.walk(dst, topdown=False):
        rel_root = Path(root).relative_to(dst)
        if rel_root != Path(".") and is_tool_state(rel_root.as_posix()):
            continue
        for filename in files:
            rel = (rel_root / filename).as_posix()
            if rel in kept or is_tool_state(rel):
                continue
            (Path(root) / filename).unlink()
            removed += 1
        for dirname in dirs:
            path = Path(root) / dirname
            if not is_tool_state((rel_root / dirname).as_posix()) and path.is_dir() and not any(path.iterdir()):
                path.rmdir()
    return removed


def write_variables(dst: Path, variables: dict[str, Any]) -> Path | None:
    """Write variable overrides for the tool to auto-load.

    An empty mapping removes any overrides left by a previous action.
    """
    path = dst / VARIABLES_FILE
    if not variables:
        path.unlink(missing_ok=True)
        return None
    path.write_text(json.dumps(variables, indent=2, sort_keys=True), encoding="utf-8")
    return path


def content_hash(root: Path) -> str:
    """Deterministic SHA-256 over ``relative path:file digest`` pairs."""
    entries: list[str] = []
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        if rel.startswith(".git/"):
            continue
        digest = hashlib.sha256(path.read_bytes()).hexdigest()
        entries.append(f"{rel}:{digest}")

    combined = hashlib.sha256()
    for entry in sorted(entries):
        combined.update(entry.encode("utf-8"))
    return combined.hexdigest()
