"""Filesystem preconditions: paths that must exist or be writable."""

from __future__ import annotations

import os
from pathlib import Path

from provision_engine.checks.base import BaseCheck


class DirectoryExistsCheck(BaseCheck):
    """Passes when *path* is an existing directory."""

    def __init__(self, path: Path, *, label: str | None = None, required: bool = True) -> None:
        super().__init__(required=required)
        self.path = path
        self._label = label

    @property
    def name(self) -> str:
        return self._label or f"directory exists: {self.path}"

    def evaluate(self) -> tuple[bool, str]:
        if self.path.is_dir():
            return True, str(self.path)
        return False, f"Directory not found: {self.path}"


class FileExistsCheck(BaseCheck):
    """Passes when *path* is an existing regular file."""

    def __init__(self, path: Path, *, label: str | None = None, required: bool = True) -> None:
        super().__init__(required=required)
        self.path = path
        self._label = label

    @property
    def name(self) -> str:
        return self._label or f"file exists: {self.path}"

    def evaluate(self) -> tuple[bool, str]:
        if self.path.is_file():
            return True, str(self.path)
        return False, f"File not found: {self.path}"


class WritableDirectoryCheck(BaseCheck):
    """Passes when files can be created in *path*.

    A directory that does not exist yet is judged by its nearest existing
    parent, since the step writing into it will create it.
    """

    def __init__(self, path: Path, *, required: bool = True) -> None:
        super().__init__(required=required)
        self.path = path

    @property
    def name(self) -> str:
        return f"writable: {self.path}"

    def evaluate(self) -> tuple[bool, str]:
        candidate = self.path
        while not candidate.exists() and candidate != candidate.parent:
            candidate = candidate.parent
        if os.access(candidate, os.W_OK | os.X_OK):
            return True, f"{candidate} is writable"
        return False, f"No write permission on {candidate} (run as root?)"
