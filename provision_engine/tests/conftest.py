"""Shared fixtures for provisioning engine tests."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from provision_engine.errors import ExternalCommandFailedError
from provision_engine.models.step import CommandResult
from provision_engine.snapshot.backend import InMemoryBackend
from provision_engine.snapshot.store import SnapshotStore


class FakeRunner:
    """Stands in for :class:`CommandRunner` and records every invocation.

    Responses are matched on the longest command prefix registered with
    :meth:`respond` or :meth:`fail`; unmatched commands succeed with empty
    output.
    """

    def __init__(self) -> None:
        self.sudo = False
        self.timeout = 60.0
        self.calls: list[dict[str, Any]] = []
        self._responses: list[tuple[tuple[str, ...], Any]] = []

    def respond(self, prefix: Sequence[str], *, stdout: str = "", exit_code: int = 0) -> None:
        self._responses.append((tuple(prefix), (stdout, exit_code)))

    def respond_sequence(self, prefix: Sequence[str], responses: Sequence[tuple[str, int]]) -> None:
        """Answer successive matching calls in order; the last response repeats."""
        self._responses.append((tuple(prefix), list(responses)))

    def fail(self, prefix: Sequence[str], exc: BaseException) -> None:
        self._responses.append((tuple(prefix), exc))

    @property
    def commands(self) -> list[list[str]]:
        return [c["cmd"] for c in self.calls]

    def __call__(
        self,
        cmd: Sequence[str],
        *,
        privileged: bool = True,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = list(cmd)
        self.calls.append({"cmd": argv, "privileged": privileged, "cwd": cwd, "env": env, "timeout": timeout})

        matches = [(p, r) for p, r in self._responses if tuple(argv[: len(p)]) == p]
        if not matches:
            return CommandResult(command=argv)
        _, response = max(matches, key=lambda m: len(m[0]))
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, list):
            stdout, exit_code = response.pop(0) if len(response) > 1 else response[0]
        else:
            stdout, exit_code = response
        if check and exit_code != 0:
            raise ExternalCommandFailedError(argv, exit_code, "")
        return CommandResult(command=argv, exit_code=exit_code, stdout=stdout)


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def memory_backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture()
def memory_store(memory_backend: InMemoryBackend) -> SnapshotStore:
    return SnapshotStore(memory_backend)
