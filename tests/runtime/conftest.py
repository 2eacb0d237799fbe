"""Shared fixtures for provisioner runtime tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from provisioner.runtime.app import app
from provisioner.runtime.config_source import StaticConfigSource
from provisioner.runtime.execution.executor import StepResult
from provisioner.runtime.execution.resolver import WorkspaceResolver
from provisioner.runtime.managers.lifecycle import LifecycleController
from provisioner.runtime.managers.templates import TemplateRegistry
from provisioner.runtime.models.enums import StepName
from provisioner.runtime.models.workspace import WorkspaceDefinition
from provisioner.runtime.registry import WorkspaceRegistry
from provisioner.runtime.scheduler import SchedulerLoop
from provisioner.runtime.store.local import LocalStateStore

MAIN_TF = 'resource "null_resource" "example" {\n  triggers = { name = "demo" }\n}\n'


class FakeExecutor:
    """Records every step instead of running the provisioning tool.

    ``fail_on`` makes the listed steps fail.  Setting ``gate`` to an unset
    event blocks every step until the test sets it; ``entered`` is set as
    soon as the first step starts.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[StepName, Path, str | None]] = []
        self.fail_on: set[StepName] = set()
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.running = 0
        self.max_running = 0

    @property
    def steps(self) -> list[StepName]:
        return [step for step, _, _ in self.calls]

    async def run(self, step: StepName, working_dir: Path, command: str | None = None) -> StepResult:
        self.calls.append((step, working_dir, command))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.entered.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.running -= 1
        if step in self.fail_on:
            return StepResult(step=step, success=False, output=f"{step}: boom", error=f"{step} exited with status 1")
        return StepResult(step=step, success=True, output=f"{step}: ok")


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def store(tmp_path: Path) -> LocalStateStore:
    return LocalStateStore(tmp_path / "state")


@pytest.fixture
def templates(tmp_path: Path) -> TemplateRegistry:
    return TemplateRegistry(tmp_path / "templates")


@pytest.fixture
def registry(store: LocalStateStore) -> WorkspaceRegistry:
    return WorkspaceRegistry(store)


@pytest.fixture
def resolver(templates: TemplateRegistry, tmp_path: Path) -> WorkspaceResolver:
    return WorkspaceResolver(templates, tmp_path / "state" / "deployments")


@pytest.fixture
def controller(registry: WorkspaceRegistry, resolver: WorkspaceResolver, executor: FakeExecutor) -> LifecycleController:
    return LifecycleController(registry, resolver, executor, action_timeout=10)


@pytest.fixture
def workspaces_dir(tmp_path: Path) -> Path:
    path = tmp_path / "workspaces"
    path.mkdir()
    return path


@pytest.fixture
def make_workspace(workspaces_dir: Path) -> Callable[..., WorkspaceDefinition]:
    """Create ``workspaces/{name}`` with ``config.json`` and inline ``main.tf``.

    Returns the definition as the directory config source would load it.
    """

    def _make(name: str, *, tf: str | None = MAIN_TF, **fields: Any) -> WorkspaceDefinition:
        ws_dir = workspaces_dir / name
        ws_dir.mkdir(parents=True, exist_ok=True)
        config = {"deploy_schedule": "0 8 * * 1-5", "destroy_schedule": "0 18 * * 1-5", **fields}
        (ws_dir / "config.json").write_text(json.dumps(config), encoding="utf-8")
        if tf is not None:
            (ws_dir / "main.tf").write_text(tf, encoding="utf-8")
        return WorkspaceDefinition.model_validate({**config, "name": name, "path": ws_dir})

    return _make


@pytest.fixture
def template_source(tmp_path: Path) -> Path:
    """A local directory usable as a ``file://`` template source."""
    src = tmp_path / "sources" / "t1"
    src.mkdir(parents=True)
    (src / "main.tf").write_text(MAIN_TF, encoding="utf-8")
    (src / "variables.tf").write_text('variable "x" {\n  type = string\n}\n', encoding="utf-8")
    return src


@pytest.fixture
async def client(
    controller: LifecycleController,
    registry: WorkspaceRegistry,
    templates: TemplateRegistry,
) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app with test components.

    The app lifespan does NOT run under ``ASGITransport``, so the runtime
    components are placed on ``app.state`` directly.
    """
    app.state.templates = templates
    app.state.controller = controller
    app.state.scheduler = SchedulerLoop(StaticConfigSource(), registry, controller, poll_interval=60)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.templates = None
    app.state.controller = None
    app.state.scheduler = None
