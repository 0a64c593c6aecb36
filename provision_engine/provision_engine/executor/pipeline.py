"""Pipeline executor: the sequential state machine that runs steps.

Steps run strictly one at a time, in order.  Before a step starts, every
resource it declares is recorded into the run's snapshot.  The first step
failure (or a cancellation noticed between steps) moves the run to
``FAILED`` and then through ``ROLLING_BACK`` to ``ROLLED_BACK``:

1. the snapshot is restored, most recently recorded resource first;
2. ``undo`` runs for every step whose ``apply`` succeeded, in reverse
   completion order.

Both happen regardless of individual failures, and every outcome lands in
the :class:`PipelineResult`.  Failed steps are never retried.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Sequence
from pathlib import Path

from provision_engine.checks.models import Timer
from provision_engine.errors import StepCancelledError, StepPreconditionError, StepTimeoutError
from provision_engine.models.run import (
    PipelineResult,
    PipelineRun,
    PipelineStatus,
    StepFailure,
    StepOutcome,
    StepStatus,
    UndoOutcome,
    UndoStatus,
)
from provision_engine.models.snapshot import RestoreOutcome, RestoreReport, RestoreStatus, SnapshotHandle
from provision_engine.models.step import CommandResult, Step, StepContext, validate_step_names
from provision_engine.snapshot.store import SnapshotStore
from provision_engine.timeouts import call_with_timeout, wait_for_abandoned

logger = logging.getLogger(__name__)

# Keep reports readable when a step dumps a whole apt log.
_MAX_OUTPUT_CHARS = 4000

DEFAULT_ABANDON_GRACE_SECONDS = 300.0


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class CancellationToken:
    """Thread-safe flag checked by the executor between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


def _render_output(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, CommandResult):
        text = value.stdout
    else:
        text = str(value)
    if len(text) > _MAX_OUTPUT_CHARS:
        text = "...[truncated]" + text[-_MAX_OUTPUT_CHARS:]
    return text


class PipelineExecutor:
    """Runs an ordered list of steps and rolls back on failure.

    Parameters
    ----------
    snapshot_store:
        Store used to capture the prior state of declared resources.
    cancel_token:
        Optional flag checked before each step; a set token is handled
        exactly like a step failure.
    abandon_grace_seconds:
        How long to wait for a timed-out action that is still running
        before moving on.  ``None`` waits indefinitely.  A step whose
        action outlives the grace period is failed (even with
        ``continue_on_failure``) and its resources are reported as not
        restored.
    """

    def __init__(
        self,
        snapshot_store: SnapshotStore,
        *,
        cancel_token: CancellationToken | None = None,
        abandon_grace_seconds: float | None = DEFAULT_ABANDON_GRACE_SECONDS,
    ) -> None:
        self._store = snapshot_store
        self._cancel = cancel_token or CancellationToken()
        self._abandon_grace = abandon_grace_seconds

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel

    def execute(
        self,
        steps: Sequence[Step],
        *,
        run: PipelineRun | None = None,
        pipeline_name: str = "",
    ) -> PipelineResult:
        """Run *steps* in order and return the final report.

        Parameters
        ----------
        steps:
            Steps to run.  Names must be unique.
        run:
            Optional ``PENDING`` run record to drive; a fresh one is
            created when omitted.
        pipeline_name:
            Label copied into the report.

        Returns
        -------
        PipelineResult
            Status ``SUCCEEDED`` or ``ROLLED_BACK``.
        """
        validate_step_names(steps)
        run = run or PipelineRun(run_id=new_run_id(), step_names=[s.name for s in steps])
        log_extra = {"run_id": run.run_id}

        run.transition(PipelineStatus.RUNNING)
        logger.info("Pipeline %s started with %d step(s)", run.run_id, len(steps), extra=log_extra)

        handle = self._store.begin_capture()
        run.snapshot_id = handle.snapshot_id

        outcomes: list[StepOutcome] = []
        completed: list[Step] = []
        warnings: list[str] = []
        failure: StepFailure | None = None
        failed_step: str | None = None
        runaway: Step | None = None

        for index, step in enumerate(steps):
            run.current_step_index = index
            step_extra = {**log_extra, "step": step.name}

            if self._cancel.is_cancelled:
                exc = StepCancelledError(f"Run cancelled before step {step.name}: {self._cancel.reason}")
                failure = StepFailure.from_exception(exc)
                failed_step = step.name
                outcomes.append(StepOutcome(step_name=step.name, status=StepStatus.FAILED, failure=failure))
                logger.error("%s", exc, extra=step_extra)
                break

            logger.info("Step %d/%d: %s", index + 1, len(steps), step.name, extra=step_extra)
            timer = Timer()
            timer.start()
            try:
                self._record_resources(handle, step)
                result = call_with_timeout(
                    lambda step=step: step.apply(self._context(run, handle, step)),
                    step.timeout_seconds,
                    what=f"step {step.name}",
                )
            except Exception as exc:
                step_failure = StepFailure.from_exception(exc)
                settled = self._settle(exc, step, step_extra)
                if not settled:
                    runaway = step
                if step.continue_on_failure and settled:
                    logger.warning(
                        "Step %s failed, continuing: %s", step.name, step_failure.detail, extra=step_extra
                    )
                    warnings.append(f"Step {step.name} failed and was skipped: {step_failure.detail}")
                    outcomes.append(
                        StepOutcome(
                            step_name=step.name,
                            status=StepStatus.FAILED_IGNORED,
                            failure=step_failure,
                            duration_ms=timer.elapsed_ms(),
                        )
                    )
                    continue

                logger.error("Step %s failed: %s", step.name, step_failure.detail, extra=step_extra)
                failure = step_failure
                failed_step = step.name
                outcomes.append(
                    StepOutcome(
                        step_name=step.name,
                        status=StepStatus.FAILED,
                        failure=step_failure,
                        duration_ms=timer.elapsed_ms(),
                    )
                )
                break

            completed.append(step)
            outcomes.append(
                StepOutcome(
                    step_name=step.name,
                    status=StepStatus.SUCCEEDED,
                    output=_render_output(result),
                    duration_ms=timer.elapsed_ms(),
                )
            )

        ran = {o.step_name for o in outcomes}
        outcomes.extend(StepOutcome(step_name=s.name, status=StepStatus.NOT_RUN) for s in steps if s.name not in ran)

        restore_report = None
        undo_outcomes: list[UndoOutcome] = []
        if failure is None:
            run.transition(PipelineStatus.SUCCEEDED)
            self._store.discard(handle)
            logger.info("Pipeline %s succeeded", run.run_id, extra=log_extra)
        else:
            run.transition(PipelineStatus.FAILED)
            run.transition(PipelineStatus.ROLLING_BACK)
            logger.warning("Pipeline %s failed at %s; rolling back", run.run_id, failed_step, extra=log_extra)
            restore_report = self._store.restore(handle)
            undo_outcomes = self._undo(run, handle, completed)
            if runaway is not None:
                restore_report = _unsettled(restore_report, runaway)
                warnings.append(f"Step {runaway.name} was still running when rollback finished")
            self._store.release(handle)
            run.transition(PipelineStatus.ROLLED_BACK)
            logger.info("Pipeline %s rolled back", run.run_id, extra=log_extra)

        return PipelineResult(
            run_id=run.run_id,
            pipeline_name=pipeline_name,
            status=run.status,
            step_outcomes=outcomes,
            undo_outcomes=undo_outcomes,
            restore_report=restore_report,
            warnings=warnings,
            failure=failure,
            failed_step=failed_step,
            snapshot_id=handle.snapshot_id,
            audit_dir=self._existing_audit_dir(handle),
            started_at=run.started_at,
            finished_at=run.finished_at,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle(self, exc: Exception, step: Step, log_extra: dict[str, str]) -> bool:
        """Wait for the worker a timeout left behind; ``False`` if it is still running."""
        if not isinstance(exc, StepTimeoutError):
            return True
        settled = wait_for_abandoned(exc.abandoned, self._abandon_grace, what=f"step {step.name}")
        if not settled:
            logger.error("Step %s is still running; its resources cannot be restored", step.name, extra=log_extra)
        return settled

    def _record_resources(self, handle: SnapshotHandle, step: Step) -> None:
        """Record each declared resource not already captured earlier in this run."""
        for resource_id in step.resources:
            if self._store.contains(handle, resource_id):
                continue
            try:
                self._store.record_current(handle, resource_id)
            except Exception as exc:
                raise StepPreconditionError(f"Could not snapshot {resource_id} before {step.name}: {exc}") from exc

    def _context(self, run: PipelineRun, handle: SnapshotHandle, step: Step) -> StepContext:
        return StepContext(run_id=run.run_id, step_name=step.name, snapshot=self._store.get(handle))

    def _undo(self, run: PipelineRun, handle: SnapshotHandle, completed: list[Step]) -> list[UndoOutcome]:
        outcomes: list[UndoOutcome] = []
        for step in reversed(completed):
            if step.undo is None:
                outcomes.append(UndoOutcome(step_name=step.name, status=UndoStatus.NO_UNDO))
                continue
            undo = step.undo
            try:
                call_with_timeout(
                    lambda undo=undo, step=step: undo(self._context(run, handle, step)),
                    step.timeout_seconds,
                    what=f"undo of {step.name}",
                )
            except Exception as exc:
                undo_failure = StepFailure.from_exception(exc)
                self._settle(exc, step, {"run_id": run.run_id, "step": step.name})
                logger.error(
                    "Undo of %s failed: %s",
                    step.name,
                    undo_failure.detail,
                    extra={"run_id": run.run_id, "step": step.name},
                )
                outcomes.append(UndoOutcome(step_name=step.name, status=UndoStatus.FAILED, failure=undo_failure))
                continue
            logger.info("Undid step %s", step.name, extra={"run_id": run.run_id, "step": step.name})
            outcomes.append(UndoOutcome(step_name=step.name, status=UndoStatus.UNDONE))
        return outcomes

    def _existing_audit_dir(self, handle: SnapshotHandle) -> Path | None:
        audit_dir = self._store.audit_dir(handle)
        if audit_dir is not None and audit_dir.exists():
            return audit_dir
        return None

def _unsettled(report: RestoreReport, step: Step) -> RestoreReport:
    """Mark the resources of a still-running step as not restored."""
    reason = f"step {step.name} was still running during restore"
    outcomes = [
        RestoreOutcome(resource_id=o.resource_id, status=RestoreStatus.FAILED, reason=reason)
        if o.resource_id in step.resources
        else o
        for o in report.outcomes
    ]
    return RestoreReport(snapshot_id=report.snapshot_id, outcomes=outcomes)

