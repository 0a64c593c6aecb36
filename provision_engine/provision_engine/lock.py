"""Host-level mutual exclusion for pipeline runs.

Only one run may target a host at a time.  The lock is a file created
with ``O_CREAT | O_EXCL`` holding the owner's pid, run id, a per-acquire
token and the acquisition time.  A lock older than its TTL is considered
abandoned (the owning process crashed) and is replaced.  A holder only
ever removes a lock file carrying its own token.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from types import TracebackType

from provision_engine.errors import HostLockError

logger = logging.getLogger(__name__)


class HostLock:
    """Exclusive, TTL-bounded lock file.

    Usage::

        with HostLock(Path("/tmp/provision.lock"), ttl_seconds=3600, owner=run_id):
            provisioner.run(definition)
    """

    def __init__(self, path: Path, *, ttl_seconds: int = 3600, owner: str = "") -> None:
        self.path = path
        self.ttl_seconds = ttl_seconds
        self.owner = owner
        self._token = ""
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock or raise :class:`HostLockError` if another run holds it."""
        if self._try_create():
            return
        holder = self._read_holder()
        if holder is None:
            # Released between our create attempt and the read.
            if self._try_create():
                return
            raise HostLockError(f"Lost race for lock: {self.path}")
        age = time.time() - float(holder.get("acquired_at", 0))
        if age <= self.ttl_seconds:
            raise HostLockError(
                f"Host is locked by run {holder.get('owner') or '?'} (pid {holder.get('pid', '?')}) "
                f"since {age:.0f}s ago: {self.path}"
            )
        logger.warning("Replacing stale lock %s (age %.0fs > ttl %ds)", self.path, age, self.ttl_seconds)
        self._evict(holder)
        if not self._try_create():
            raise HostLockError(f"Lost race for stale lock: {self.path}")

    def release(self) -> None:
        """Remove the lock file if it is still ours.

        A run that outlived its TTL may have had its lock replaced by
        another run; that lock is left alone.
        """
        if not self._held:
            return
        self._held = False
        holder = self._read_holder()
        if holder is None:
            return
        if holder.get("token") != self._token:
            logger.warning(
                "Lock %s now belongs to run %s (pid %s); leaving it in place",
                self.path,
                holder.get("owner") or "?",
                holder.get("pid", "?"),
            )
            return
        self.path.unlink(missing_ok=True)
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> HostLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        token = uuid.uuid4().hex
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"pid": os.getpid(), "owner": self.owner, "token": token, "acquired_at": time.time()}, fh)
        self._token = token
        self._held = True
        logger.debug("Acquired lock %s", self.path)
        return True

    def _evict(self, stale: dict[str, object]) -> None:
        """Move the stale lock aside; only one contender's rename can succeed."""
        aside = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex[:8]}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            raise HostLockError(f"Lost race for stale lock: {self.path}") from None
        try:
            moved = json.loads(aside.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            moved = {}
        if isinstance(moved, dict) and moved.get("token") != stale.get("token"):
            # Another contender replaced the stale lock first; give it back.
            try:
                os.link(aside, self.path)
            except FileExistsError:
                pass
            aside.unlink(missing_ok=True)
            raise HostLockError(f"Lost race for stale lock: {self.path}")
        aside.unlink(missing_ok=True)

    def _read_holder(self) -> dict[str, object] | None:
        """Return the lock file's contents, or ``None`` if there is no lock file."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Unreadable or half-written lock: treat it as freshly held.
            return {"acquired_at": time.time()}
        return data if isinstance(data, dict) else {"acquired_at": time.time()}
