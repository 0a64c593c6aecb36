"""Exception hierarchy for the provisioning engine.

Errors raised before a pipeline starts running (configuration, required
preconditions) abort with nothing to undo.  :class:`StepError` and its
subclasses are raised by step actions while the pipeline is running and
always trigger a rollback.  Restore failures are never raised; they are
reported in the :class:`~provision_engine.models.snapshot.RestoreReport`.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from concurrent.futures import Future

    from provision_engine.checks.models import CheckResult


class ProvisioningError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(ProvisioningError):
    """Raised when deployment settings are missing or invalid."""


class PreconditionFailedError(ProvisioningError):
    """Raised when one or more required pre-flight checks failed."""

    def __init__(self, failed: list[CheckResult]) -> None:
        self.failed = failed
        names = ", ".join(r.name for r in failed)
        super().__init__(f"Required precondition(s) failed: {names}")


class DuplicateStepError(ProvisioningError):
    """Raised when two steps in one pipeline share a name."""


class InvalidTransitionError(ProvisioningError):
    """Raised on a non-monotonic pipeline status transition."""


class SnapshotError(ProvisioningError):
    """Raised on misuse of the snapshot store (unknown handle, double capture)."""


class DuplicateEntryError(SnapshotError):
    """Raised when a resource is recorded twice within one capture."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource already recorded in this snapshot: {resource_id}")


class HostLockError(ProvisioningError):
    """Raised when another run already holds the host lock."""


# ---------------------------------------------------------------------------
# Step errors
# ---------------------------------------------------------------------------


class StepErrorKind(str, Enum):
    """Classification of a step failure."""

    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    EXTERNAL_COMMAND_FAILED = "EXTERNAL_COMMAND_FAILED"
    TIMEOUT = "TIMEOUT"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    CANCELLED = "CANCELLED"
    UNEXPECTED = "UNEXPECTED"


class StepError(ProvisioningError):
    """Base class for failures raised by a step's apply or undo action."""

    kind: StepErrorKind = StepErrorKind.UNEXPECTED

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class StepPreconditionError(StepError):
    """A step found the host in a state it cannot work with.

    Should never happen mid-run; it indicates a pipeline whose
    preconditions do not cover what its steps rely on.
    """

    kind = StepErrorKind.PRECONDITION_FAILED


class ExternalCommandFailedError(StepError):
    """An external command exited non-zero or could not be started."""

    kind = StepErrorKind.EXTERNAL_COMMAND_FAILED

    def __init__(self, command: list[str], exit_code: int, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f"Command failed with exit code {exit_code}: {' '.join(command)}"
        if stderr:
            detail = f"{detail}\n{stderr}"
        super().__init__(detail)


class StepTimeoutError(StepError):
    """An action did not complete within its allotted time.

    When the action ran on a worker thread that is still going,
    *abandoned* is that worker's future.
    """

    kind = StepErrorKind.TIMEOUT

    def __init__(
        self,
        after_seconds: float,
        what: str = "action",
        *,
        abandoned: Future[object] | None = None,
    ) -> None:
        self.after_seconds = after_seconds
        self.abandoned = abandoned
        super().__init__(f"{what} timed out after {after_seconds:g}s")


class ResourceConflictError(StepError):
    """A resource changed unexpectedly since its snapshot was taken."""

    kind = StepErrorKind.RESOURCE_CONFLICT

    def __init__(self, resource_id: str, reason: str = "modified since snapshot") -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource conflict on {resource_id}: {reason}")


class StepCancelledError(StepError):
    """The run was cancelled before the next step started."""

    kind = StepErrorKind.CANCELLED
