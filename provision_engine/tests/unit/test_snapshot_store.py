"""Tests for provision_engine.snapshot.store."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from provision_engine.errors import DuplicateEntryError, ResourceConflictError, SnapshotError
from provision_engine.models.snapshot import (
    PriorState,
    ResourceState,
    RestoreStatus,
    Snapshot,
    SnapshotEntry,
)
from provision_engine.snapshot.backend import FileSystemBackend, InMemoryBackend
from provision_engine.snapshot.store import MANIFEST_NAME, SnapshotStore


@pytest.fixture()
def recorded_chowns(monkeypatch: pytest.MonkeyPatch) -> list[tuple[int, int]]:
    """Capture ownership changes instead of applying them."""
    chowns: list[tuple[int, int]] = []
    monkeypatch.setattr(os, "chown", lambda _path, uid, gid: chowns.append((uid, gid)))
    return chowns


class _FlakyBackend(InMemoryBackend):
    """Fails writes and deletes for selected resource ids."""

    def __init__(self, initial: dict[str, bytes] | None = None, *, broken: set[str]) -> None:
        super().__init__(initial)
        self.broken = broken

    def write(
        self,
        resource_id: str,
        content: bytes,
        mode: int | None = None,
        *,
        uid: int | None = None,
        gid: int | None = None,
    ) -> None:
        if resource_id in self.broken:
            raise PermissionError(f"read-only: {resource_id}")
        super().write(resource_id, content, mode, uid=uid, gid=gid)

    def delete(self, resource_id: str) -> None:
        if resource_id in self.broken:
            raise PermissionError(f"read-only: {resource_id}")
        super().delete(resource_id)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class TestCapture:
    def test_begin_capture_returns_fresh_handle(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        assert handle.snapshot_id.startswith("snapshot_")
        assert store.get(handle).entries == []

    def test_second_open_capture_rejected(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        store.begin_capture()
        with pytest.raises(SnapshotError, match="still open"):
            store.begin_capture()

    def test_record_existing_resource(self) -> None:
        store = SnapshotStore(InMemoryBackend({"/etc/app.conf": b"old"}))
        handle = store.begin_capture()
        entry = store.record_current(handle, "/etc/app.conf")
        assert entry.prior_state == PriorState.EXISTING
        assert entry.content == b"old"
        assert entry.sha256 is not None

    def test_record_absent_resource(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        entry = store.record_current(handle, "/etc/new.conf")
        assert entry.prior_state == PriorState.ABSENT
        assert entry.content is None

    def test_entries_keep_capture_order(self) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"1"}))
        handle = store.begin_capture()
        for rid in ("a", "b", "c"):
            store.record_current(handle, rid)
        assert store.get(handle).resource_ids() == ["a", "b", "c"]
        assert [e.index for e in store.get(handle).entries] == [0, 1, 2]

    def test_duplicate_record_rejected_and_first_entry_kept(self) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"first"}))
        handle = store.begin_capture()
        store.record_current(handle, "a")
        with pytest.raises(DuplicateEntryError) as exc_info:
            store.record(handle, "a", ResourceState(exists=True, content=b"second"))
        assert exc_info.value.resource_id == "a"
        snapshot = store.get(handle)
        assert len(snapshot.entries) == 1
        assert snapshot.entries[0].content == b"first"

    def test_record_after_restore_rejected(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        store.restore(handle)
        with pytest.raises(SnapshotError, match="closed"):
            store.record_current(handle, "a")

    def test_contains(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        store.record_current(handle, "a")
        assert store.contains(handle, "a")
        assert not store.contains(handle, "b")


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class TestRestore:
    def test_restores_existing_and_removes_created(self) -> None:
        backend = InMemoryBackend({"conf": b"original"})
        store = SnapshotStore(backend)
        handle = store.begin_capture()
        store.record_current(handle, "conf")
        store.record_current(handle, "new")
        backend.write("conf", b"changed")
        backend.write("new", b"created")

        report = store.restore(handle)

        assert report.is_complete
        assert report.restored_count == 2
        assert backend.get("conf") == b"original"
        assert "new" not in backend

    def test_restore_is_lifo(self) -> None:
        backend = InMemoryBackend({"a": b"1", "b": b"2", "c": b"3"})
        store = SnapshotStore(backend)
        handle = store.begin_capture()
        for rid in ("a", "b", "c"):
            store.record_current(handle, rid)

        report = store.restore(handle)

        assert [o.resource_id for o in report.outcomes] == ["c", "b", "a"]

    def test_partial_failure_reports_every_entry(self) -> None:
        backend = _FlakyBackend({"a": b"1", "b": b"2", "c": b"3"}, broken={"b"})
        store = SnapshotStore(backend)
        handle = store.begin_capture()
        for rid in ("a", "b", "c"):
            store.record_current(handle, rid)
        backend.write("a", b"x")
        backend.write("c", b"z")

        report = store.restore(handle)

        assert len(report.outcomes) == 3
        assert [o.resource_id for o in report.failed] == ["b"]
        assert "PermissionError" in report.failed[0].reason
        assert backend.get("a") == b"1"
        assert backend.get("c") == b"3"
        assert not report.is_complete

    def test_empty_snapshot_restores_nothing(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        report = store.restore(handle)
        assert report.outcomes == []
        assert report.is_complete

    def test_restore_preserves_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "secret.env"
        target.write_bytes(b"KEY=1")
        target.chmod(0o600)
        store = SnapshotStore(FileSystemBackend())
        handle = store.begin_capture()
        store.record_current(handle, str(target))
        target.write_bytes(b"KEY=2")
        target.chmod(0o644)

        store.restore(handle)

        assert target.read_bytes() == b"KEY=1"
        assert target.stat().st_mode & 0o777 == 0o600

    def test_restore_reapplies_owner(self) -> None:
        backend = InMemoryBackend()
        backend.write("/srv/shop/.env", b"KEY=1", 0o600, uid=1000, gid=1000)
        store = SnapshotStore(backend)
        handle = store.begin_capture()
        entry = store.record_current(handle, "/srv/shop/.env")
        backend.write("/srv/shop/.env", b"KEY=2", uid=0, gid=0)

        store.restore(handle)

        assert (entry.uid, entry.gid) == (1000, 1000)
        assert backend.owner("/srv/shop/.env") == (1000, 1000)

    def test_existing_entry_without_content_reported(self) -> None:
        entry = SnapshotEntry.model_construct(
            index=0,
            resource_id="/etc/app.conf",
            prior_state=PriorState.EXISTING,
            content=None,
            mode=None,
            uid=None,
            gid=None,
            sha256=None,
        )
        backend = InMemoryBackend({"/etc/app.conf": b"current"})

        report = SnapshotStore(backend).restore_snapshot(Snapshot(snapshot_id="snap_bad", entries=[entry]))

        assert report.failed[0].resource_id == "/etc/app.conf"
        assert "No captured content" in report.failed[0].reason
        assert backend.get("/etc/app.conf") == b"current"

    def test_release_drops_restored_snapshot(self, tmp_path: Path) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"1"}), audit_root=tmp_path)
        handle = store.begin_capture()
        store.record_current(handle, "a")
        store.restore(handle)

        store.release(handle)

        with pytest.raises(SnapshotError, match="Unknown snapshot"):
            store.get(handle)
        assert (store.audit_dir(handle) / MANIFEST_NAME).is_file()

    def test_release_of_open_capture_rejected(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        with pytest.raises(SnapshotError, match="still open"):
            store.release(handle)
        assert store.get(handle).entries == []


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------


class TestAssertUnchanged:
    def test_unchanged_resource_passes(self) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"1"}))
        handle = store.begin_capture()
        store.record_current(handle, "a")
        store.assert_unchanged(handle, "a")

    def test_modified_resource_conflicts(self) -> None:
        backend = InMemoryBackend({"a": b"1"})
        store = SnapshotStore(backend)
        handle = store.begin_capture()
        store.record_current(handle, "a")
        backend.write("a", b"2")
        with pytest.raises(ResourceConflictError, match="content modified"):
            store.assert_unchanged(handle, "a")

    def test_created_resource_conflicts(self) -> None:
        backend = InMemoryBackend()
        store = SnapshotStore(backend)
        handle = store.begin_capture()
        store.record_current(handle, "a")
        backend.write("a", b"surprise")
        with pytest.raises(ResourceConflictError):
            store.assert_unchanged(handle, "a")

    def test_unrecorded_resource_is_an_error(self) -> None:
        store = SnapshotStore(InMemoryBackend())
        handle = store.begin_capture()
        with pytest.raises(SnapshotError, match="never recorded"):
            store.assert_unchanged(handle, "a")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    def test_manifest_and_blobs_written(self, tmp_path: Path) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"payload"}), audit_root=tmp_path)
        handle = store.begin_capture()
        store.record_current(handle, "a")
        store.record_current(handle, "b")

        audit_dir = store.audit_dir(handle)
        assert audit_dir is not None
        manifest = json.loads((audit_dir / MANIFEST_NAME).read_text())
        assert [e["resource_id"] for e in manifest["entries"]] == ["a", "b"]
        assert "content" not in manifest["entries"][0]
        assert (audit_dir / "blobs" / "0000.bin").read_bytes() == b"payload"
        assert not (audit_dir / "blobs" / "0001.bin").exists()

    def test_load_round_trips_entries(self, tmp_path: Path) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"payload"}), audit_root=tmp_path)
        handle = store.begin_capture()
        store.record_current(handle, "a")
        store.record_current(handle, "b")

        loaded = SnapshotStore.load(store.audit_dir(handle))

        assert loaded.snapshot_id == handle.snapshot_id
        assert loaded.get("a").content == b"payload"
        assert loaded.get("b").prior_state == PriorState.ABSENT

    def test_load_detects_tampered_blob(self, tmp_path: Path) -> None:
        store = SnapshotStore(InMemoryBackend({"a": b"payload"}), audit_root=tmp_path)
        handle = store.begin_capture()
        store.record_current(handle, "a")
        audit_dir = store.audit_dir(handle)
        (audit_dir / "blobs" / "0000.bin").write_bytes(b"tampered")

        with pytest.raises(SnapshotError, match="digest mismatch"):
            SnapshotStore.load(audit_dir)

    def test_load_missing_manifest(self, tmp_path: Path) -> None:
        with pytest.raises(SnapshotError, match="No snapshot manifest"):
            SnapshotStore.load(tmp_path)

    def test_load_corrupt_manifest(self, tmp_path: Path) -> None:
        (tmp_path / MANIFEST_NAME).write_text("{not json")
        with pytest.raises(SnapshotError, match="Corrupt"):
            SnapshotStore.load(tmp_path)

    def test_restore_loaded_snapshot(self, tmp_path: Path) -> None:
        backend = InMemoryBackend({"a": b"v1"})
        store = SnapshotStore(backend, audit_root=tmp_path / "audit")
        handle = store.begin_capture()
        store.record_current(handle, "a")
        store.record_current(handle, "b")
        backend.write("a", b"v2")
        backend.write("b", b"created")

        snapshot = SnapshotStore.load(store.audit_dir(handle))
        report = SnapshotStore(backend).restore_snapshot(snapshot)

        assert all(o.status == RestoreStatus.RESTORED for o in report.outcomes)
        assert backend.get("a") == b"v1"
        assert "b" not in backend

    def test_discard_removes_audit_dir_unless_retained(self, tmp_path: Path) -> None:
        store = SnapshotStore(InMemoryBackend(), audit_root=tmp_path)
        handle = store.begin_capture()
        audit_dir = store.audit_dir(handle)
        store.discard(handle)
        assert not audit_dir.exists()
        with pytest.raises(SnapshotError, match="Unknown snapshot"):
            store.get(handle)

    def test_discard_keeps_audit_dir_when_retained(self, tmp_path: Path) -> None:
        store = SnapshotStore(InMemoryBackend(), audit_root=tmp_path, retain=True)
        handle = store.begin_capture()
        audit_dir = store.audit_dir(handle)
        store.discard(handle)
        assert (audit_dir / MANIFEST_NAME).is_file()


# ---------------------------------------------------------------------------
# Filesystem backend
# ---------------------------------------------------------------------------


class TestFileSystemBackend:
    def test_read_missing_file(self, tmp_path: Path) -> None:
        state = FileSystemBackend().read(str(tmp_path / "nope"))
        assert not state.exists

    def test_directory_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(SnapshotError, match="Directories"):
            FileSystemBackend().read(str(tmp_path))

    def test_write_creates_parents_and_sets_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "dir" / "file.conf"
        FileSystemBackend().write(str(target), b"data", 0o640)
        assert target.read_bytes() == b"data"
        assert target.stat().st_mode & 0o777 == 0o640
        assert [p.name for p in target.parent.iterdir()] == ["file.conf"]

    def test_delete_missing_is_not_an_error(self, tmp_path: Path) -> None:
        FileSystemBackend().delete(str(tmp_path / "nope"))

    def test_read_reports_owner(self, tmp_path: Path) -> None:
        target = tmp_path / "app.conf"
        target.write_bytes(b"x")
        st = target.stat()
        state = FileSystemBackend().read(str(target))
        assert (state.uid, state.gid) == (st.st_uid, st.st_gid)

    def test_write_keeps_owner_and_mode_of_replaced_file(
        self, tmp_path: Path, recorded_chowns: list[tuple[int, int]]
    ) -> None:
        target = tmp_path / ".env"
        target.write_bytes(b"old")
        target.chmod(0o640)
        st = target.stat()

        FileSystemBackend().write(str(target), b"new")

        assert recorded_chowns == [(st.st_uid, st.st_gid)]
        assert target.read_bytes() == b"new"
        assert target.stat().st_mode & 0o777 == 0o640

    def test_write_applies_explicit_owner(self, tmp_path: Path, recorded_chowns: list[tuple[int, int]]) -> None:
        FileSystemBackend().write(str(tmp_path / ".env"), b"new", 0o600, uid=1000, gid=1000)

        assert recorded_chowns == [(1000, 1000)]

    def test_new_file_without_owner_not_chowned(self, tmp_path: Path, recorded_chowns: list[tuple[int, int]]) -> None:
        FileSystemBackend().write(str(tmp_path / "new.conf"), b"data")

        assert recorded_chowns == []

    @pytest.mark.skipif(not hasattr(os, "geteuid") or os.geteuid() != 0, reason="changing ownership needs root")
    def test_write_over_foreign_file_keeps_its_owner(self, tmp_path: Path) -> None:
        target = tmp_path / ".env"
        target.write_bytes(b"old")
        os.chown(target, 1000, 1000)

        FileSystemBackend().write(str(target), b"new", 0o600)

        st = target.stat()
        assert (st.st_uid, st.st_gid) == (1000, 1000)
