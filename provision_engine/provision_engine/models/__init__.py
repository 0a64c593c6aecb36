"""Domain models for the provisioning engine."""

from provision_engine.models.run import (
    PipelineResult,
    PipelineRun,
    PipelineStatus,
    StepFailure,
    StepOutcome,
    StepStatus,
    UndoOutcome,
    UndoStatus,
    VerificationWarning,
)
from provision_engine.models.snapshot import (
    PriorState,
    ResourceState,
    RestoreOutcome,
    RestoreReport,
    RestoreStatus,
    Snapshot,
    SnapshotEntry,
    SnapshotHandle,
)
from provision_engine.models.step import CommandResult, Step, StepContext

__all__ = [
    "CommandResult",
    "PipelineResult",
    "PipelineRun",
    "PipelineStatus",
    "PriorState",
    "ResourceState",
    "RestoreOutcome",
    "RestoreReport",
    "RestoreStatus",
    "Snapshot",
    "SnapshotEntry",
    "SnapshotHandle",
    "Step",
    "StepContext",
    "StepFailure",
    "StepOutcome",
    "StepStatus",
    "UndoOutcome",
    "UndoStatus",
    "VerificationWarning",
]
