"""Domain errors raised by the provisioner runtime.

Every error carries a stable ``kind`` string.  It is persisted on failed
action outcomes and returned verbatim by the API so that callers can branch
on it without parsing messages.

Managers raise these, never HTTP exceptions -- the routers translate kinds
into status codes.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for all provisioner domain errors."""

    kind: str = "Error"


class NotFoundError(ProvisionerError, LookupError):
    """Unknown workspace or template name."""

    kind = "NotFound"

    def __init__(self, what: str, name: str) -> None:
        super().__init__(f"{what} '{name}' not found")
        self.name = name


class AlreadyExistsError(ProvisionerError, ValueError):
    """A template with the given name is already registered."""

    kind = "AlreadyExists"

    def __init__(self, what: str, name: str) -> None:
        super().__init__(f"{what} '{name}' already exists")
        self.name = name


class ValidationFailedError(ProvisionerError, ValueError):
    """Malformed schedule expression, workspace definition or template content."""

    kind = "ValidationError"


class FetchError(ProvisionerError, RuntimeError):
    """Template source unreachable, or the requested ref / sub-path is missing."""

    kind = "FetchError"


class BusyError(ProvisionerError, RuntimeError):
    """An action is already in flight for the workspace."""

    kind = "Busy"

    def __init__(self, name: str) -> None:
        super().__init__(f"Workspace '{name}' has an action in flight")
        self.name = name


class DisabledError(ProvisionerError, RuntimeError):
    """Scheduled trigger for a workspace whose ``enabled`` flag is off."""

    kind = "Disabled"

    def __init__(self, name: str) -> None:
        super().__init__(f"Workspace '{name}' is disabled")
        self.name = name


class InvalidTransitionError(ProvisionerError, RuntimeError):
    """The requested action is not allowed from the workspace's current status."""

    kind = "InvalidTransition"


class ActionTimeoutError(ProvisionerError, TimeoutError):
    """An action (or template fetch) exceeded its time bound."""

    kind = "Timeout"


class ExecutionFailure(ProvisionerError, RuntimeError):  # noqa: N818
    """A provisioning step returned non-success."""

    kind = "ExecutionFailure"

    def __init__(self, message: str, *, step: str | None = None, output: str = "") -> None:
        super().__init__(message)
        self.step = step
        self.output = output


class InUseError(ProvisionerError, RuntimeError):
    """Template removal blocked because workspaces still reference it."""

    kind = "InUse"

    def __init__(self, name: str, workspaces: list[str]) -> None:
        joined = ", ".join(sorted(workspaces))
        super().__init__(f"Template '{name}' is used by workspaces: {joined}")
        self.name = name
        self.workspaces = sorted(workspaces)


class InterruptedActionError(ProvisionerError, RuntimeError):
    """An action was found mid-flight at startup; its true outcome is unknown."""

    kind = "Interrupted"


class ShuttingDownError(ProvisionerError, RuntimeError):
    """Raised when an action is requested while the daemon is draining."""

    kind = "ShuttingDown"
