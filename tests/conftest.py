"""Shared test fixtures.

No Docker, network or provisioning tool required: actions run through a
scripted ``FakeExecutor`` (see ``tests/runtime/conftest.py``) and templates
are fetched from local directories.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from provisioner.runtime.settings import ProvisionerSettings, get_settings


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[ProvisionerSettings]:
    """Settings rooted in a temporary directory, read through ``get_settings``."""
    monkeypatch.setenv("PROVISIONER_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("PROVISIONER_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("PROVISIONER_POLL_INTERVAL", "1")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
