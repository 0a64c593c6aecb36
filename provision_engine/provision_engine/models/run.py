"""Pipeline run models: lifecycle state and the final report.

A :class:`PipelineRun` moves monotonically through
``PENDING -> RUNNING -> SUCCEEDED`` or
``RUNNING -> FAILED -> ROLLING_BACK -> ROLLED_BACK``.
The :class:`PipelineResult` is the structured report handed back to the
caller; it enumerates every check, step, undo and restore outcome so a
partial success can never be mistaken for a full one.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from provision_engine.checks.models import CheckResult, VerificationWarning
from provision_engine.errors import InvalidTransitionError, StepError, StepErrorKind
from provision_engine.models.snapshot import RestoreReport


class PipelineStatus(str, Enum):
    """Lifecycle state of a pipeline run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"


_ALLOWED_TRANSITIONS: dict[PipelineStatus, frozenset[PipelineStatus]] = {
    PipelineStatus.PENDING: frozenset({PipelineStatus.RUNNING}),
    PipelineStatus.RUNNING: frozenset({PipelineStatus.SUCCEEDED, PipelineStatus.FAILED}),
    PipelineStatus.FAILED: frozenset({PipelineStatus.ROLLING_BACK}),
    PipelineStatus.ROLLING_BACK: frozenset({PipelineStatus.ROLLED_BACK}),
    PipelineStatus.SUCCEEDED: frozenset(),
    PipelineStatus.ROLLED_BACK: frozenset(),
}


class StepStatus(str, Enum):
    """Outcome of a single step's apply action."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    FAILED_IGNORED = "FAILED_IGNORED"
    NOT_RUN = "NOT_RUN"


class UndoStatus(str, Enum):
    UNDONE = "UNDONE"
    FAILED = "FAILED"
    NO_UNDO = "NO_UNDO"


class StepFailure(BaseModel):
    """Structured description of why a step (or its undo) failed."""

    kind: StepErrorKind
    detail: str
    exit_code: int | None = None
    stderr: str | None = None
    after_seconds: float | None = None
    resource_id: str | None = None

    @staticmethod
    def from_exception(exc: BaseException) -> StepFailure:
        """Map any exception onto the step error taxonomy."""
        if not isinstance(exc, StepError):
            return StepFailure(
                kind=StepErrorKind.UNEXPECTED,
                detail=f"{type(exc).__name__}: {exc}",
            )
        return StepFailure(
            kind=exc.kind,
            detail=exc.detail,
            exit_code=getattr(exc, "exit_code", None),
            stderr=getattr(exc, "stderr", None),
            after_seconds=getattr(exc, "after_seconds", None),
            resource_id=getattr(exc, "resource_id", None),
        )


class StepOutcome(BaseModel):
    """Outcome of one step's apply action."""

    step_name: str
    status: StepStatus
    output: str = ""
    failure: StepFailure | None = None
    duration_ms: int = 0


class UndoOutcome(BaseModel):
    """Outcome of one step's undo action during rollback."""

    step_name: str
    status: UndoStatus
    failure: StepFailure | None = None


class PipelineRun(BaseModel):
    """Mutable lifecycle record of the single active run."""

    run_id: str = Field(..., min_length=1)
    step_names: list[str] = Field(default_factory=list)
    status: PipelineStatus = PipelineStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    current_step_index: int | None = None
    snapshot_id: str | None = None

    def transition(self, new_status: PipelineStatus) -> None:
        """Move to *new_status*, rejecting anything but the allowed forward edges."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Run {self.run_id}: cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        now = datetime.now(UTC)
        if new_status == PipelineStatus.RUNNING:
            self.started_at = now
        elif new_status in (PipelineStatus.SUCCEEDED, PipelineStatus.ROLLED_BACK):
            self.finished_at = now


class PipelineResult(BaseModel):
    """Final report of a pipeline run."""

    run_id: str
    pipeline_name: str = ""
    status: PipelineStatus
    precondition_results: list[CheckResult] = Field(default_factory=list)
    step_outcomes: list[StepOutcome] = Field(default_factory=list)
    undo_outcomes: list[UndoOutcome] = Field(default_factory=list)
    restore_report: RestoreReport | None = None
    verification_results: list[CheckResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    verification_warnings: list[VerificationWarning] = Field(default_factory=list)
    failure: StepFailure | None = None
    failed_step: str | None = None
    snapshot_id: str | None = None
    audit_dir: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.SUCCEEDED

    @property
    def rolled_back(self) -> bool:
        return self.status == PipelineStatus.ROLLED_BACK

    @property
    def aborted_before_running(self) -> bool:
        """True when a required precondition kept the run in PENDING."""
        return self.status == PipelineStatus.PENDING

    @property
    def residual_discrepancies(self) -> list[str]:
        """Undo and restore failures left behind by a rollback."""
        issues = [
            f"undo of {u.step_name} failed: {u.failure.detail if u.failure else 'unknown'}"
            for u in self.undo_outcomes
            if u.status == UndoStatus.FAILED
        ]
        if self.restore_report is not None:
            issues.extend(f"restore of {o.resource_id} failed: {o.reason}" for o in self.restore_report.failed)
        return issues
