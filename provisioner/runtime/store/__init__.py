"""State store implementations for workspace runtime state."""

from provisioner.runtime.store.base import StateStore
from provisioner.runtime.store.local import LocalStateStore

__all__ = ["LocalStateStore", "StateStore"]
