"""Tests for the scheduler loop: reload, schedule evaluation and dispatch."""

from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from provisioner.runtime.config_source import DirectoryConfigSource, StaticConfigSource
from provisioner.runtime.execution.resolver import WorkspaceResolver
from provisioner.runtime.managers.lifecycle import LifecycleController
from provisioner.runtime.models.enums import ActionKind, LifecycleStatus, StepName
from provisioner.runtime.models.workspace import WorkspaceDefinition
from provisioner.runtime.registry import WorkspaceRegistry
from provisioner.runtime.scheduler import SchedulerLoop

if TYPE_CHECKING:
    from tests.runtime.conftest import FakeExecutor

MakeWorkspace = Callable[..., WorkspaceDefinition]

MONDAY_0800 = datetime(2024, 1, 1, 8, 0).astimezone()
MONDAY_1800 = datetime(2024, 1, 1, 18, 0).astimezone()


@pytest.fixture
def source() -> StaticConfigSource:
    return StaticConfigSource()


@pytest.fixture
def scheduler(
    source: StaticConfigSource,
    registry: WorkspaceRegistry,
    controller: LifecycleController,
) -> SchedulerLoop:
    return SchedulerLoop(source, registry, controller, poll_interval=0.01, clock=lambda: MONDAY_0800)


async def _settle(dispatched) -> None:
    await asyncio.gather(*(d.task for d in dispatched if d.task is not None))


async def test_weekday_deploy_and_destroy(
    scheduler: SchedulerLoop,
    source: StaticConfigSource,
    controller: LifecycleController,
    executor: FakeExecutor,
    make_workspace: MakeWorkspace,
) -> None:
    source.definitions = [make_workspace("w1")]

    dispatched = await scheduler.tick(MONDAY_0800 + timedelta(seconds=3))
    assert [(d.workspace, d.action, d.minute) for d in dispatched] == [("w1", ActionKind.DEPLOY, MONDAY_0800)]
    assert controller.status("w1").state.status == LifecycleStatus.DEPLOYING
    await _settle(dispatched)
    assert controller.status("w1").state.status == LifecycleStatus.DEPLOYED

    # A second poll inside the same minute does not fire again.
    assert await scheduler.tick(MONDAY_0800 + timedelta(seconds=33)) == []

    # Nothing in between.
    assert await scheduler.tick(MONDAY_0800 + timedelta(hours=4)) == []

    dispatched = await scheduler.tick(MONDAY_1800 + timedelta(seconds=1))
    assert [d.action for d in dispatched] == [ActionKind.DESTROY]
    await _settle(dispatched)
    assert controller.status("w1").state.status == LifecycleStatus.DESTROYED
    assert executor.steps == [StepName.INIT, StepName.PLAN, StepName.APPLY, StepName.INIT, StepName.DESTROY]


async def test_weekend_does_not_fire(
    scheduler: SchedulerLoop,
    source: StaticConfigSource,
    make_workspace: MakeWorkspace,
) -> None:
    source.definitions = [make_workspace("w1")]
    saturday = MONDAY_0800 + timedelta(days=5)
    assert await scheduler.tick(saturday) == []


async def test_disabled_workspace_is_not_evaluated(
    scheduler: SchedulerLoop,
    source: StaticConfigSource,
    make_workspace: MakeWorkspace,
    executor: FakeExecutor,
) -> None:
    source.definitions = [make_workspace("w1", enabled=False)]
    assert await scheduler.tick(MONDAY_0800) == []
    assert executor.calls == []


async def test_busy_trigger_is_dropped(
    scheduler: SchedulerLoop,
    source: StaticConfigSource,
    controller: LifecycleController,
    executor: FakeExecutor,
    make_workspace: MakeWorkspace,
) -> None:
    """A destroy firing while the deploy still runs is dropped, not queued."""
    source.definitions = [make_workspace("w1", destroy_schedule="1 8 * * 1-5")]
    executor.gate = asyncio.Event()

    first = await scheduler.tick(MONDAY_0800)
    await executor.entered.wait()
    dropped = await scheduler.tick(MONDAY_0800 + timedelta(minutes=1))
    assert [(d.action, d.task) for d in dropped] == [(ActionKind.DESTROY, None)]
    assert controller.status("w1").state.last_destroy_fired_at is None

    executor.gate.set()
    await _settle(first)
    assert controller.status("w1").state.status == LifecycleStatus.DEPLOYED


async def test_fired_minute_survives_restart(
    scheduler: SchedulerLoop,
    source: StaticConfigSource,
    registry: WorkspaceRegistry,
    resolver: WorkspaceResolver,
    executor: FakeExecutor,
    make_workspace: MakeWorkspace,
) -> None:
    """The matched minute is persisted, so a restarted loop does not re-fire it."""
    definition = make_workspace("w1")
    source.definitions = [definition]
    await _settle(await scheduler.tick(MONDAY_0800))

    restarted = WorkspaceRegistry(registry.store)
    await restarted.load()
    await restarted.sync([definition])
    # Back to a state that would allow a deploy.
    restarted.get("w1").state.status = LifecycleStatus.DESTROYED
    restarted_loop = SchedulerLoop(
        StaticConfigSource([definition]),
        restarted,
        LifecycleController(restarted, resolver, executor),
    )
    assert await restarted_loop.tick(MONDAY_0800 + timedelta(seconds=20)) == []


async def test_hot_reload_add_edit_remove(
    scheduler: SchedulerLoop,
    source: StaticConfigSource,
    registry: WorkspaceRegistry,
    make_workspace: MakeWorkspace,
) -> None:
    source.definitions = [make_workspace("w1")]
    summary = await scheduler.reload()
    assert summary.added == ["w1"]

    source.definitions = [make_workspace("w1", description="edited"), make_workspace("w2")]
    summary = await scheduler.reload()
    assert summary.updated == ["w1"]
    assert summary.added == ["w2"]
    assert registry.get("w1").definition.description == "edited"

    source.definitions = [make_workspace("w2")]
    summary = await scheduler.reload()
    assert summary.removed == ["w1"]
    assert [e.name for e in registry.entries()] == ["w2"]


async def test_run_and_stop(scheduler: SchedulerLoop) -> None:
    loop_task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(loop_task, timeout=1)


# ---------------------------------------------------------------------------
# Directory config source
# ---------------------------------------------------------------------------


def test_directory_source_loads_workspaces(workspaces_dir: Path, make_workspace: MakeWorkspace) -> None:
    make_workspace("b")
    make_workspace("a", template="t1")

    definitions = DirectoryConfigSource(workspaces_dir).load().definitions

    assert [d.name for d in definitions] == ["a", "b"]
    assert definitions[0].template_name == "t1"
    assert definitions[0].path == workspaces_dir / "a"


def test_directory_source_skips_invalid(workspaces_dir: Path, make_workspace: MakeWorkspace) -> None:
    make_workspace("good")
    (workspaces_dir / "broken").mkdir()
    (workspaces_dir / "broken" / "config.json").write_text("{", encoding="utf-8")
    (workspaces_dir / "invalid").mkdir()
    (workspaces_dir / "invalid" / "config.json").write_text(json.dumps({"deploy_schedule": True}), encoding="utf-8")
    (workspaces_dir / "no-config").mkdir()

    loaded = DirectoryConfigSource(workspaces_dir).load()

    assert [d.name for d in loaded.definitions] == ["good"]
    assert loaded.unreadable == {"broken", "invalid"}


def test_directory_source_uses_directory_name(workspaces_dir: Path) -> None:
    (workspaces_dir / "w1").mkdir()
    config = {"name": "something-else", "deploy_schedule": "0 8 * * *"}
    (workspaces_dir / "w1" / "config.json").write_text(json.dumps(config), encoding="utf-8")
    assert [d.name for d in DirectoryConfigSource(workspaces_dir).load().definitions] == ["w1"]


def test_directory_source_missing_root(tmp_path: Path) -> None:
    loaded = DirectoryConfigSource(tmp_path / "missing").load()
    assert loaded.definitions == []
    assert loaded.unreadable == set()


async def test_half_written_config_keeps_deployed_state(
    workspaces_dir: Path,
    registry: WorkspaceRegistry,
    controller: LifecycleController,
    executor: FakeExecutor,
    make_workspace: MakeWorkspace,
) -> None:
    """A config caught mid-save must not reset the workspace or lose its destroy."""
    make_workspace("w1")
    config_path = workspaces_dir / "w1" / "config.json"
    good_config = config_path.read_text(encoding="utf-8")
    loop = SchedulerLoop(DirectoryConfigSource(workspaces_dir), registry, controller)

    await _settle(await loop.tick(MONDAY_0800))
    assert controller.status("w1").state.status == LifecycleStatus.DEPLOYED

    config_path.write_text(good_config[: len(good_config) // 2], encoding="utf-8")
    summary = await loop.reload()
    assert summary.retained == ["w1"]
    assert summary.removed == []
    assert controller.status("w1").state.status == LifecycleStatus.DEPLOYED

    config_path.write_text(good_config, encoding="utf-8")
    await loop.reload()
    assert controller.status("w1").state.status == LifecycleStatus.DEPLOYED

    dispatched = await loop.tick(MONDAY_1800 + timedelta(seconds=5))
    assert [d.action for d in dispatched] == [ActionKind.DESTROY]
    assert dispatched[0].task is not None
    await _settle(dispatched)
    assert controller.status("w1").state.status == LifecycleStatus.DESTROYED
    assert executor.steps[-1] == StepName.DESTROY


async def test_deleted_workspace_directory_is_removed(
    workspaces_dir: Path,
    registry: WorkspaceRegistry,
    controller: LifecycleController,
    make_workspace: MakeWorkspace,
) -> None:
    make_workspace("w1")
    loop = SchedulerLoop(DirectoryConfigSource(workspaces_dir), registry, controller)
    await loop.reload()

    shutil.rmtree(workspaces_dir / "w1")
    summary = await loop.reload()

    assert summary.removed == ["w1"]
    assert not await registry.store.exists("w1")
