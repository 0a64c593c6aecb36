"""Snapshot models for capturing the prior state of mutable host resources.

A snapshot records, for every resource a pipeline is about to touch,
either the bytes it held before the run or the fact that it did not exist.
Entries keep their capture order; restore walks them in reverse.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PriorState(str, Enum):
    """Whether a resource existed when it was recorded."""

    EXISTING = "EXISTING"
    ABSENT = "ABSENT"


class ResourceState(BaseModel):
    """Current state of a resource as read from a backend."""

    exists: bool
    content: bytes | None = None
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None


class SnapshotEntry(BaseModel):
    """Prior state of a single resource."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Position in capture order.")
    resource_id: str = Field(..., min_length=1, description="Resource path or identifier.")
    prior_state: PriorState
    content: bytes | None = Field(
        default=None,
        exclude=True,
        description="Prior content; only set when prior_state is EXISTING.",
    )
    mode: int | None = Field(default=None, description="Permission bits of the prior file, if known.")
    uid: int | None = Field(default=None, description="Owning user id of the prior file, if known.")
    gid: int | None = Field(default=None, description="Owning group id of the prior file, if known.")
    sha256: str | None = Field(default=None, description="SHA-256 digest of the prior content.")
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _content_matches_state(self) -> SnapshotEntry:
        if self.prior_state == PriorState.EXISTING and self.content is None:
            raise ValueError(f"Entry for {self.resource_id} is EXISTING but carries no content")
        if self.prior_state == PriorState.ABSENT and self.content is not None:
            raise ValueError(f"Entry for {self.resource_id} is ABSENT but carries content")
        return self


class Snapshot(BaseModel):
    """Ordered prior-state capture for one pipeline run."""

    snapshot_id: str = Field(..., min_length=1)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    entries: list[SnapshotEntry] = Field(default_factory=list)

    def resource_ids(self) -> list[str]:
        return [e.resource_id for e in self.entries]

    def get(self, resource_id: str) -> SnapshotEntry | None:
        for entry in self.entries:
            if entry.resource_id == resource_id:
                return entry
        return None

    def __contains__(self, resource_id: object) -> bool:
        return any(e.resource_id == resource_id for e in self.entries)


class SnapshotHandle(BaseModel):
    """Opaque reference to a snapshot owned by a :class:`SnapshotStore`."""

    model_config = ConfigDict(frozen=True)

    snapshot_id: str


class RestoreStatus(str, Enum):
    RESTORED = "RESTORED"
    FAILED = "FAILED"


class RestoreOutcome(BaseModel):
    """Result of restoring a single snapshot entry."""

    resource_id: str
    status: RestoreStatus
    reason: str = ""


class RestoreReport(BaseModel):
    """Per-entry outcome of a restore sweep, in the order entries were restored."""

    snapshot_id: str
    outcomes: list[RestoreOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> list[RestoreOutcome]:
        return [o for o in self.outcomes if o.status == RestoreStatus.FAILED]

    @property
    def restored_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == RestoreStatus.RESTORED)

    @property
    def is_complete(self) -> bool:
        """True when every entry was restored."""
        return not self.failed
