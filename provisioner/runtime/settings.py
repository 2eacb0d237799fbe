"""Service configuration loaded from PROVISIONER_* environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ProvisionerSettings(BaseSettings):
    """Provisioner daemon settings.

    All fields are read from environment variables with the ``PROVISIONER_``
    prefix.  For example, ``PROVISIONER_POLL_INTERVAL=10`` maps to
    ``poll_interval``.

    Provider credentials used by the provisioning tool itself (cloud API
    keys, ``TF_VAR_*``) are **not** managed here -- they pass through the
    process environment to the tool unchanged.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Emit one JSON object per log line instead of colored text."""

    # -- Data locations --------------------------------------------------------
    config_dir: str = "."
    workspaces_dir: str | None = None
    """Directory of workspace definitions.  Defaults to ``{config_dir}/workspaces``."""

    state_dir: str = "./state"
    """Runtime state, action logs and per-workspace working directories."""

    templates_dir: str | None = None
    """Template registry and cache.  Defaults to ``{state_dir}/templates``."""

    # -- Scheduling and execution ----------------------------------------------
    poll_interval: float = 30.0
    action_timeout: float = 3600.0
    """Upper bound on one deploy / destroy, including configuration resolution."""

    fetch_timeout: float = 300.0
    tofu_binary: str = "tofu"

    # -- Server ----------------------------------------------------------------
    host: str = "127.0.0.1"
    port: int = 8080
    graceful_shutdown_timeout: int = 3600
    """Seconds to wait for in-flight actions to finish during shutdown.

    Note: uvicorn's ``--timeout-graceful-shutdown`` must be >= this value
    for the wait to be effective.
    """

    # -- Helpers ---------------------------------------------------------------

    @property
    def workspaces_path(self) -> Path:
        return Path(self.workspaces_dir) if self.workspaces_dir else Path(self.config_dir) / "workspaces"

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir)

    @property
    def templates_path(self) -> Path:
        return Path(self.templates_dir) if self.templates_dir else self.state_path / "templates"

    @property
    def deployments_path(self) -> Path:
        return self.state_path / "deployments"

    @property
    def daemon_url(self) -> str:
        host = "127.0.0.1" if self.host in ("0.0.0.0", "::") else self.host  # noqa: S104
        return f"http://{host}:{self.port}"


@lru_cache(maxsize=1)
def get_settings() -> ProvisionerSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``get_settings.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return ProvisionerSettings()
