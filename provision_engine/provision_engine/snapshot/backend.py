"""Resource backends: how the snapshot store reads and writes resource state.

Every backend must satisfy the :class:`ResourceBackend` protocol so that
the snapshot store stays independent of where resources live.  The
filesystem backend treats resource ids as absolute file paths; the
in-memory backend lets whole pipelines run against a fake host.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Protocol

from provision_engine.errors import SnapshotError
from provision_engine.models.snapshot import ResourceState

logger = logging.getLogger(__name__)


class ResourceBackend(Protocol):
    """Structural interface for resource storage.

    Implementations are **not** required to subclass this protocol; they
    only need to expose methods with matching signatures.
    """

    def read(self, resource_id: str) -> ResourceState:
        """Return the current state of *resource_id*."""
        ...

    def write(
        self,
        resource_id: str,
        content: bytes,
        mode: int | None = None,
        *,
        uid: int | None = None,
        gid: int | None = None,
    ) -> None:
        """Replace *resource_id* with *content*, creating it if needed.

        Mode and ownership that are not given are kept from the resource
        being replaced.
        """
        ...

    def delete(self, resource_id: str) -> None:
        """Remove *resource_id*.  Removing a missing resource is not an error."""
        ...


class FileSystemBackend:
    """Resources are regular files addressed by path.

    Writes go to a temporary file in the target directory followed by
    :func:`os.replace`, so a restore never leaves a half-written file.
    The temporary file takes the replaced file's mode and owner before
    the swap.
    """

    def read(self, resource_id: str) -> ResourceState:
        path = Path(resource_id)
        if path.is_dir():
            raise SnapshotError(f"Directories cannot be snapshotted: {resource_id}")
        if not path.exists():
            return ResourceState(exists=False)
        st = path.stat()
        return ResourceState(
            exists=True,
            content=path.read_bytes(),
            mode=stat.S_IMODE(st.st_mode),
            uid=st.st_uid,
            gid=st.st_gid,
        )

    def write(
        self,
        resource_id: str,
        content: bytes,
        mode: int | None = None,
        *,
        uid: int | None = None,
        gid: int | None = None,
    ) -> None:
        path = Path(resource_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_file():
            current = path.stat()
            mode = stat.S_IMODE(current.st_mode) if mode is None else mode
            uid = current.st_uid if uid is None else uid
            gid = current.st_gid if gid is None else gid

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            if uid is not None or gid is not None:
                os.chown(tmp_name, -1 if uid is None else uid, -1 if gid is None else gid)
            if mode is not None:
                os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Wrote %d bytes to %s", len(content), path)

    def delete(self, resource_id: str) -> None:
        Path(resource_id).unlink(missing_ok=True)
        logger.debug("Removed %s", resource_id)


class InMemoryBackend:
    """Dictionary-backed resources for dry runs and tests."""

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self._files: dict[str, bytes] = dict(initial or {})
        self._modes: dict[str, int] = {}
        self._owners: dict[str, tuple[int | None, int | None]] = {}

    def read(self, resource_id: str) -> ResourceState:
        if resource_id not in self._files:
            return ResourceState(exists=False)
        uid, gid = self._owners.get(resource_id, (None, None))
        return ResourceState(
            exists=True,
            content=self._files[resource_id],
            mode=self._modes.get(resource_id),
            uid=uid,
            gid=gid,
        )

    def write(
        self,
        resource_id: str,
        content: bytes,
        mode: int | None = None,
        *,
        uid: int | None = None,
        gid: int | None = None,
    ) -> None:
        self._files[resource_id] = content
        if mode is not None:
            self._modes[resource_id] = mode
        if uid is not None or gid is not None:
            old_uid, old_gid = self._owners.get(resource_id, (None, None))
            self._owners[resource_id] = (old_uid if uid is None else uid, old_gid if gid is None else gid)

    def delete(self, resource_id: str) -> None:
        self._files.pop(resource_id, None)
        self._modes.pop(resource_id, None)
        self._owners.pop(resource_id, None)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._files

    def get(self, resource_id: str) -> bytes | None:
        return self._files.get(resource_id)

    def owner(self, resource_id: str) -> tuple[int | None, int | None]:
        return self._owners.get(resource_id, (None, None))
