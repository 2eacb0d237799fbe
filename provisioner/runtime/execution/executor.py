"""Provisioning executor -- runs one step of the external tool.

The executor knows nothing about schedules or lifecycle status.  It runs a
single step in a working directory and reports success plus captured text;
the lifecycle controller decides what a failure means.

Time bounds are applied by the caller: the controller wraps the whole
action in ``anyio.fail_after``.  ``anyio.run_process`` kills the child
process when that scope is cancelled.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import anyio
from loguru import logger

from provisioner.runtime.models.enums import StepName

# Non-interactive invocations of the default tool sequence.
DEFAULT_ARGS: dict[StepName, tuple[str, ...]] = {
    StepName.INIT: ("init", "-input=false", "-no-color"),
    StepName.PLAN: ("plan", "-input=false", "-no-color"),
    StepName.APPLY: ("apply", "-auto-approve", "-input=false", "-no-color"),
    StepName.DESTROY: ("destroy", "-auto-approve", "-input=false", "-no-color"),
}


@dataclass
class StepResult:
    """Outcome of a single provisioning step."""

    step: StepName
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: int = 0


@runtime_checkable
class ProvisioningExecutor(Protocol):
    async def run(self, step: StepName, working_dir: Path, command: str | None = None) -> StepResult:
        """Run *step* in *working_dir*, or *command* in its place when given."""
        ...


class TofuExecutor:
    """Runs OpenTofu / Terraform compatible binaries as subprocesses.

    Custom command overrides are opaque shell command lines and run through
    the shell with the working directory as CWD.
    """

    def __init__(self, binary: str = "tofu", env: dict[str, str] | None = None) -> None:
        self._binary = binary
        self._env = env

    def command_for(self, step: StepName, command: str | None = None) -> str | list[str]:
        if command is not None:
            return command
        return [self._binary, *DEFAULT_ARGS[step]]

    async def run(self, step: StepName, working_dir: Path, command: str | None = None) -> StepResult:
        cmd = self.command_for(step, command)
        logger.debug("Executor: {} in {} ({})", step, working_dir, cmd)
        started = time.monotonic()
        try:
            completed = await anyio.run_process(
                cmd,
                cwd=working_dir,
                env=self._env,
                check=False,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            # Missing binary, bad CWD, ...
            return StepResult(step=step, success=False, error=f"{step} could not start: {exc}")

        duration_ms = int((time.monotonic() - started) * 1000)
        output = completed.stdout.decode("utf-8", errors="replace") if completed.stdout else ""
        if completed.returncode != 0:
            return StepResult(
                step=step,
                success=False,
                output=output,
                error=f"{step} exited with status {completed.returncode}",
                duration_ms=duration_ms,
            )
        return StepResult(step=step, success=True, output=output, duration_ms=duration_ms)
