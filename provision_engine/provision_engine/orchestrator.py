"""End-to-end provisioning: preconditions, pipeline execution, verification.

:class:`Provisioner` wires the three phases together::

    PreconditionChecker.run --(no blocking failure)--> PipelineExecutor.execute
        --(SUCCEEDED)--> Verifier.verify

A blocking precondition leaves the run in ``PENDING`` with zero steps
invoked and nothing recorded.  Verification failures are reported as
warnings on an otherwise ``SUCCEEDED`` result.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from provision_engine.checks.base import BaseCheck
from provision_engine.checks.engine import PreconditionChecker, Verifier
from provision_engine.checks.models import CheckResult, VerificationWarning
from provision_engine.errors import PreconditionFailedError, StepErrorKind
from provision_engine.executor.pipeline import (
    DEFAULT_ABANDON_GRACE_SECONDS,
    CancellationToken,
    PipelineExecutor,
    new_run_id,
)
from provision_engine.models.run import (
    PipelineResult,
    PipelineRun,
    PipelineStatus,
    StepFailure,
    StepOutcome,
    StepStatus,
)
from provision_engine.models.step import Step, validate_step_names
from provision_engine.snapshot.store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineDefinition:
    """Everything needed to run one provisioning pipeline."""

    name: str
    steps: tuple[Step, ...]
    preconditions: tuple[BaseCheck, ...] = field(default=())
    verifications: tuple[BaseCheck, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "preconditions", tuple(self.preconditions))
        object.__setattr__(self, "verifications", tuple(self.verifications))
        validate_step_names(self.steps)


class Provisioner:
    """Runs a :class:`PipelineDefinition` from pre-flight to verification.

    Parameters
    ----------
    snapshot_store:
        Store used by the executor for this run.
    cancel_token:
        Optional token shared with the executor.
    abandon_grace_seconds:
        Passed to :class:`PipelineExecutor`.
    """

    def __init__(
        self,
        snapshot_store: SnapshotStore,
        *,
        cancel_token: CancellationToken | None = None,
        checker: PreconditionChecker | None = None,
        verifier: Verifier | None = None,
        abandon_grace_seconds: float | None = DEFAULT_ABANDON_GRACE_SECONDS,
    ) -> None:
        self._executor = PipelineExecutor(
            snapshot_store, cancel_token=cancel_token, abandon_grace_seconds=abandon_grace_seconds
        )
        self._checker = checker or PreconditionChecker()
        self._verifier = verifier or Verifier()

    @property
    def cancel_token(self) -> CancellationToken:
        return self._executor.cancel_token

    def run(self, definition: PipelineDefinition, *, run_id: str | None = None) -> PipelineResult:
        """Run *definition* and return the full report.

        Never raises for step, restore or verification failures; those are
        reported in the result.  Invalid definitions still raise.
        """
        run = PipelineRun(run_id=run_id or new_run_id(), step_names=[s.name for s in definition.steps])
        logger.info("Provisioning %s (run %s)", definition.name, run.run_id, extra={"run_id": run.run_id})

        precondition_results = self._checker.run(definition.preconditions)
        warnings = [f"Precondition {r.name} failed: {r.detail}" for r in precondition_results if r.is_warning]
        blocking = [r for r in precondition_results if r.is_blocking]

        if blocking:
            error = PreconditionFailedError(blocking)
            logger.error("%s; nothing was changed", error, extra={"run_id": run.run_id})
            return PipelineResult(
                run_id=run.run_id,
                pipeline_name=definition.name,
                status=run.status,
                precondition_results=precondition_results,
                step_outcomes=[StepOutcome(step_name=s.name, status=StepStatus.NOT_RUN) for s in definition.steps],
                warnings=warnings,
                failure=StepFailure(kind=StepErrorKind.PRECONDITION_FAILED, detail=str(error)),
            )

        result = self._executor.execute(definition.steps, run=run, pipeline_name=definition.name)

        verification_results: list[CheckResult] = []
        verification_warnings: list[VerificationWarning] = []
        if result.status == PipelineStatus.SUCCEEDED and definition.verifications:
            verification_results = self._verifier.verify(definition.verifications)
            verification_warnings = Verifier.warnings_for(verification_results)

        return result.model_copy(
            update={
                "precondition_results": precondition_results,
                "warnings": warnings + result.warnings,
                "verification_results": verification_results,
                "verification_warnings": verification_warnings,
            }
        )

    def check(self, checks: Sequence[BaseCheck]) -> list[CheckResult]:
        """Run *checks* as preconditions without executing anything."""
        return self._checker.run(checks)

    def verify(self, checks: Sequence[BaseCheck]) -> list[CheckResult]:
        """Run *checks* as verifications without executing anything."""
        return self._verifier.verify(checks)
