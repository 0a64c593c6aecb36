"""Snapshot store: capture and restore of resource prior state.

The store owns one snapshot per pipeline run.  Entries are appended while
the run is capturing and are read-only afterwards.  Restore walks entries
in reverse capture order so a later step's resources are restored before
an earlier step's, and it never stops at the first failure: every entry
gets an outcome in the :class:`RestoreReport`.

When an audit root is configured, each entry is also written to disk as
it is recorded::

    <audit_root>/<snapshot_id>/manifest.json
    <audit_root>/<snapshot_id>/blobs/0000.bin

which lets a crashed or failed run be inspected and restored later with
:meth:`SnapshotStore.load` and :meth:`SnapshotStore.restore_snapshot`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from provision_engine.errors import DuplicateEntryError, ResourceConflictError, SnapshotError
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
from provision_engine.snapshot.backend import FileSystemBackend, ResourceBackend

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
_BLOB_DIR = "blobs"


def _sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _blob_name(index: int) -> str:
    return f"{index:04d}.bin"


def _generate_snapshot_id() -> str:
    """Generate a unique, sortable snapshot id."""
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    return f"snapshot_{stamp}_{uuid.uuid4().hex[:8]}"


class SnapshotStore:
    """Captures and restores the mutable state touched by pipeline steps.

    Parameters
    ----------
    backend:
        Where resources live.  Defaults to :class:`FileSystemBackend`.
    audit_root:
        When set, snapshots are persisted under this directory as they
        are captured.
    retain:
        Keep the on-disk copy after a successful run's :meth:`discard`.
        Snapshots of failed runs are always kept.
    """

    def __init__(
        self,
        backend: ResourceBackend | None = None,
        *,
        audit_root: Path | None = None,
        retain: bool = False,
    ) -> None:
        self._backend: ResourceBackend = backend or FileSystemBackend()
        self._audit_root = audit_root
        self._retain = retain
        self._snapshots: dict[str, Snapshot] = {}
        self._open: str | None = None

    @property
    def backend(self) -> ResourceBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def begin_capture(self) -> SnapshotHandle:
        """Allocate a new snapshot and open it for recording.

        Raises
        ------
        SnapshotError
            If another capture is still open.
        """
        if self._open is not None:
            raise SnapshotError(f"Capture {self._open} is still open; only one capture per run")

        snapshot = Snapshot(snapshot_id=_generate_snapshot_id())
        self._snapshots[snapshot.snapshot_id] = snapshot
        self._open = snapshot.snapshot_id

        audit_dir = self.audit_dir(SnapshotHandle(snapshot_id=snapshot.snapshot_id))
        if audit_dir is not None:
            (audit_dir / _BLOB_DIR).mkdir(parents=True, exist_ok=True)
            self._write_manifest(snapshot, audit_dir)

        logger.info("Snapshot capture started: %s", snapshot.snapshot_id)
        return SnapshotHandle(snapshot_id=snapshot.snapshot_id)

    def record(self, handle: SnapshotHandle, resource_id: str, prior: ResourceState) -> SnapshotEntry:
        """Append the prior state of *resource_id* to the open capture.

        Raises
        ------
        DuplicateEntryError
            If *resource_id* was already recorded in this capture.
        SnapshotError
            If the capture is not open.
        """
        snapshot = self._require_open(handle)
        if resource_id in snapshot:
            raise DuplicateEntryError(resource_id)

        entry = SnapshotEntry(
            index=len(snapshot.entries),
            resource_id=resource_id,
            prior_state=PriorState.EXISTING if prior.exists else PriorState.ABSENT,
            content=prior.content if prior.exists else None,
            mode=prior.mode if prior.exists else None,
            uid=prior.uid if prior.exists else None,
            gid=prior.gid if prior.exists else None,
            sha256=_sha256(prior.content) if prior.exists and prior.content is not None else None,
        )
        snapshot.entries.append(entry)

        audit_dir = self.audit_dir(handle)
        if audit_dir is not None:
            if entry.content is not None:
                (audit_dir / _BLOB_DIR / _blob_name(entry.index)).write_bytes(entry.content)
            self._write_manifest(snapshot, audit_dir)

        logger.debug("Recorded %s (%s) in %s", resource_id, entry.prior_state.value, handle.snapshot_id)
        return entry

    def record_current(self, handle: SnapshotHandle, resource_id: str) -> SnapshotEntry:
        """Read the current state of *resource_id* from the backend and record it."""
        return self.record(handle, resource_id, self._backend.read(resource_id))

    def contains(self, handle: SnapshotHandle, resource_id: str) -> bool:
        return resource_id in self.get(handle)

    def get(self, handle: SnapshotHandle) -> Snapshot:
        """Return the snapshot behind *handle*."""
        try:
            return self._snapshots[handle.snapshot_id]
        except KeyError:
            raise SnapshotError(f"Unknown snapshot: {handle.snapshot_id}") from None

    def assert_unchanged(self, handle: SnapshotHandle, resource_id: str) -> None:
        """Raise :class:`ResourceConflictError` if *resource_id* drifted from its recorded state."""
        entry = self.get(handle).get(resource_id)
        if entry is None:
            raise SnapshotError(f"{resource_id} was never recorded in {handle.snapshot_id}")

        current = self._backend.read(resource_id)
        if entry.prior_state == PriorState.ABSENT:
            if current.exists:
                raise ResourceConflictError(resource_id, "created by someone else since snapshot")
            return
        if not current.exists:
            raise ResourceConflictError(resource_id, "deleted since snapshot")
        if _sha256(current.content or b"") != entry.sha256:
            raise ResourceConflictError(resource_id, "content modified since snapshot")

    # ------------------------------------------------------------------
    # Restore / discard
    # ------------------------------------------------------------------

    def restore(self, handle: SnapshotHandle) -> RestoreReport:
        """Restore every recorded entry, most recent first, and close the capture."""
        snapshot = self.get(handle)
        if self._open == handle.snapshot_id:
            self._open = None
        report = self.restore_snapshot(snapshot)
        audit_dir = self.audit_dir(handle)
        if audit_dir is not None:
            logger.info("Snapshot preserved at: %s", audit_dir)
        return report

    def restore_snapshot(self, snapshot: Snapshot) -> RestoreReport:
        """Apply *snapshot* back onto the backend.

        Best effort: a failing entry is reported and the sweep moves on.
        Never raises for a partial restore.
        """
        report = RestoreReport(snapshot_id=snapshot.snapshot_id)
        for entry in reversed(snapshot.entries):
            try:
                if entry.prior_state == PriorState.EXISTING:
                    if entry.content is None:
                        raise SnapshotError(f"No captured content for {entry.resource_id}")
                    self._backend.write(
                        entry.resource_id, entry.content, entry.mode, uid=entry.uid, gid=entry.gid
                    )
                else:
                    self._backend.delete(entry.resource_id)
            except Exception as exc:
                logger.error("Failed to restore %s: %s", entry.resource_id, exc)
                report.outcomes.append(
                    RestoreOutcome(
                        resource_id=entry.resource_id,
                        status=RestoreStatus.FAILED,
                        reason=f"{type(exc).__name__}: {exc}",
                    )
                )
                continue
            logger.info("Restored %s (%s)", entry.resource_id, entry.prior_state.value)
            report.outcomes.append(RestoreOutcome(resource_id=entry.resource_id, status=RestoreStatus.RESTORED))

        if report.failed:
            logger.warning(
                "Restore of %s incomplete: %d of %d entries failed",
                snapshot.snapshot_id,
                len(report.failed),
                len(report.outcomes),
            )
        return report

    def discard(self, handle: SnapshotHandle) -> None:
        """Release the snapshot of a successfully completed run."""
        self.get(handle)
        audit_dir = self.audit_dir(handle)
        del self._snapshots[handle.snapshot_id]
        if self._open == handle.snapshot_id:
            self._open = None

        if audit_dir is not None:
            if self._retain:
                logger.info("Snapshot retained for audit at: %s", audit_dir)
            else:
                shutil.rmtree(audit_dir, ignore_errors=True)
        logger.debug("Discarded snapshot %s", handle.snapshot_id)

    def release(self, handle: SnapshotHandle) -> None:
        """Drop the in-memory copy of a restored snapshot.

        The persisted copy under the audit root is left in place; it can
        still be re-read with :meth:`load`.
        """
        if self._open == handle.snapshot_id:
            raise SnapshotError(f"Capture {handle.snapshot_id} is still open")
        self._snapshots.pop(handle.snapshot_id, None)
        logger.debug("Released snapshot %s from memory", handle.snapshot_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def audit_dir(self, handle: SnapshotHandle) -> Path | None:
        """Directory holding the persisted copy of *handle*, if persistence is on."""
        if self._audit_root is None:
            return None
        return self._audit_root / handle.snapshot_id

    @staticmethod
    def load(snapshot_dir: Path) -> Snapshot:
        """Re-read a snapshot persisted under *snapshot_dir*.

        Raises
        ------
        SnapshotError
            If the manifest is missing or a blob does not match its digest.
        """
        manifest_path = snapshot_dir / MANIFEST_NAME
        if not manifest_path.is_file():
            raise SnapshotError(f"No snapshot manifest found at {manifest_path}")

        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise SnapshotError(f"Corrupt snapshot manifest {manifest_path}: {exc}") from exc
        for raw in data.get("entries", []):
            if raw.get("prior_state") != PriorState.EXISTING.value:
                continue
            blob_path = snapshot_dir / _BLOB_DIR / _blob_name(raw["index"])
            try:
                content = blob_path.read_bytes()
            except OSError as exc:
                raise SnapshotError(f"Missing blob for {raw['resource_id']}: {blob_path}") from exc
            if _sha256(content) != raw.get("sha256"):
                raise SnapshotError(f"Blob digest mismatch for {raw['resource_id']}: {blob_path}")
            raw["content"] = content

        try:
            return Snapshot.model_validate(data)
        except ValidationError as exc:
            raise SnapshotError(f"Invalid snapshot manifest {manifest_path}: {exc}") from exc

    def _require_open(self, handle: SnapshotHandle) -> Snapshot:
        snapshot = self.get(handle)
        if self._open != handle.snapshot_id:
            raise SnapshotError(f"Capture {handle.snapshot_id} is closed")
        return snapshot

    @staticmethod
    def _write_manifest(snapshot: Snapshot, audit_dir: Path) -> None:
        (audit_dir / MANIFEST_NAME).write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
