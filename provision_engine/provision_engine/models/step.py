"""Step definitions: the unit of provisioning work.

A :class:`Step` pairs an ``apply`` action with an optional ``undo``
action and declares the resources ``apply`` may overwrite.  The executor
records each declared resource into the run's snapshot before the step
starts, so a step never needs to talk to the snapshot store itself.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from provision_engine.errors import DuplicateStepError
from provision_engine.models.snapshot import PriorState, Snapshot, SnapshotEntry


class CommandResult(BaseModel):
    """Captured outcome of an external command."""

    command: list[str] = Field(default_factory=list)
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class StepContext:
    """Read-only view handed to ``apply`` and ``undo`` actions."""

    run_id: str
    step_name: str
    snapshot: Snapshot

    def prior_entry(self, resource_id: str) -> SnapshotEntry | None:
        return self.snapshot.get(resource_id)

    def existed_before(self, resource_id: str) -> bool:
        """Return True if *resource_id* existed before this run touched it.

        Resources that were never recorded are reported as existing, since
        nothing in this run created them.
        """
        entry = self.snapshot.get(resource_id)
        return entry is None or entry.prior_state == PriorState.EXISTING


StepAction = Callable[[StepContext], Any]


@dataclass(frozen=True)
class Step:
    """A named unit of provisioning work.

    Attributes
    ----------
    name:
        Unique name within a pipeline.
    apply:
        Performs the work.  Raises a :class:`~provision_engine.errors.StepError`
        on failure; any other exception is reported as ``UNEXPECTED``.  May
        return a :class:`CommandResult`, a string, or ``None``.
    undo:
        Optional logical reversal (e.g. disabling a service that ``apply``
        enabled).  File contents are restored from the snapshot, not here.
    resources:
        Resource ids ``apply`` may mutate, recorded before the step runs.
    timeout_seconds:
        When set, ``apply`` and ``undo`` are treated as failed on expiry.
    continue_on_failure:
        A failure is reported as a warning and the pipeline carries on.
    """

    name: str
    apply: StepAction
    undo: StepAction | None = None
    resources: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    continue_on_failure: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Step name cannot be empty")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Step {self.name}: timeout_seconds must be positive")
        # Accept any sequence for resources but store an immutable tuple.
        object.__setattr__(self, "resources", tuple(self.resources))


def validate_step_names(steps: Sequence[Step]) -> None:
    """Raise :class:`DuplicateStepError` if any two steps share a name."""
    seen: set[str] = set()
    for step in steps:
        if step.name in seen:
            raise DuplicateStepError(f"Duplicate step name in pipeline: {step.name}")
        seen.add(step.name)
