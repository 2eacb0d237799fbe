"""Tests for working-directory materialization helpers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from provisioner.runtime.execution.workdir import (
    VARIABLES_FILE,
    content_hash,
    copy_configuration,
    is_tool_state,
    prune_stale,
    write_variables,
)


@pytest.mark.parametrize(
    ("rel", "expected"),
    [
        ("terraform.tfstate", True),
        ("terraform.tfstate.backup", True),
        (".terraform.lock.hcl", True),
        (".terraform/providers/x", True),
        ("deploy.tfplan", True),
        ("main.tf", False),
        ("modules/net/main.tf", False),
        ("modules/terraform.tfstate", False),
    ],
)
def test_is_tool_state(rel: str, expected: bool) -> None:
    assert is_tool_state(rel) is expected


def test_copy_preserves_existing_tool_state(tmp_path: Path) -> None:
    src = tmp_path / "src"
    (src / "modules").mkdir(parents=True)
    (src / "main.tf").write_text("v2", encoding="utf-8")
    (src / "modules" / "net.tf").write_text("net", encoding="utf-8")
    (src / "terraform.tfstate").write_text("stale", encoding="utf-8")
    (src / ".terraform").mkdir()
    (src / ".terraform" / "cache").write_text("x", encoding="utf-8")
    (src / "config.json").write_text("{}", encoding="utf-8")

    dst = tmp_path / "dst"
    dst.mkdir()
    (dst / "main.tf").write_text("v1", encoding="utf-8")
    (dst / "terraform.tfstate").write_text("live", encoding="utf-8")

    copied = copy_configuration(src, dst, exclude=frozenset({"config.json"}))

    assert copied == 2
    assert (dst / "main.tf").read_text(encoding="utf-8") == "v2"
    assert (dst / "modules" / "net.tf").read_text(encoding="utf-8") == "net"
    assert (dst / "terraform.tfstate").read_text(encoding="utf-8") == "live"
    assert not (dst / ".terraform").exists()
    assert not (dst / "config.json").exists()


def test_copy_skips_git_metadata(tmp_path: Path) -> None:
    src = tmp_path / "src"
    (src / ".git").mkdir(parents=True)
    (src / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    (src / "main.tf").write_text("x", encoding="utf-8")

    dst = tmp_path / "dst"
    copy_configuration(src, dst)
    assert not (dst / ".git").exists()


def test_write_variables(tmp_path: Path) -> None:
    path = write_variables(tmp_path, {"x": "y", "count": 2})
    assert path == tmp_path / VARIABLES_FILE
    assert json.loads(path.read_text(encoding="utf-8")) == {"count": 2, "x": "y"}

    # Empty overrides remove the file from a previous action.
    assert write_variables(tmp_path, {}) is None
    assert not (tmp_path / VARIABLES_FILE).exists()


def test_content_hash_is_deterministic(tmp_path: Path) -> None:
    a = tmp_path / "a"
    b = tmp_path / "b"
    for root in (a, b):
        (root / "sub").mkdir(parents=True)
        (root / "main.tf").write_text("main", encoding="utf-8")
        (root / "sub" / "x.tf").write_text("x", encoding="utf-8")
    assert content_hash(a) == content_hash(b)

    (b / "sub" / "x.tf").write_text("changed", encoding="utf-8")
    assert content_hash(a) != content_hash(b)


def test_content_hash_depends_on_paths(tmp_path: Path) -> None:
    a = tmp_path / "a"
    b = tmp_path / "b"
    a.mkdir()
    b.mkdir()
    (a / "one.tf").write_text("same", encoding="utf-8")
    (b / "two.tf").write_text("same", encoding="utf-8")
    assert content_hash(a) != content_hash(b)


def test_copy_prunes_files_missing_from_source(tmp_path: Path) -> None:
    src = tmp_path / "src"
    src.mkdir()
    (src / "main.tf").write_text("main", encoding="utf-8")

    dst = tmp_path / "dst"
    (dst / "modules" / "old").mkdir(parents=True)
    (dst / "modules" / "old" / "net.tf").write_text("gone", encoding="utf-8")
    (dst / "extra.tf").write_text("gone", encoding="utf-8")
    (dst / "terraform.tfstate").write_text("live", encoding="utf-8")
    (dst / "deploy.tfplan").write_text("plan", encoding="utf-8")
    (dst / ".terraform" / "providers").mkdir(parents=True)
    (dst / ".terraform" / "providers" / "p").write_text("bin", encoding="utf-8")

    copy_configuration(src, dst)

    assert sorted(p.relative_to(dst).as_posix() for p in dst.rglob("*") if p.is_file()) == [
        ".terraform/providers/p",
        "deploy.tfplan",
        "main.tf",
        "terraform.tfstate",
    ]
    assert not (dst / "modules").exists()


def test_prune_stale_reports_deleted_count(tmp_path: Path) -> None:
    (tmp_path / "a.tf").write_text("a", encoding="utf-8")
    (tmp_path / "b.tf").write_text("b", encoding="utf-8")
    assert prune_stale(tmp_path, {"a.tf"}) == 1
    assert (tmp_path / "a.tf").is_file()
