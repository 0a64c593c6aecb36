"""Factories for the common kinds of provisioning step.

Most provisioning work is either "run these commands" or "write this
file, then run these commands".  The factories below build
:class:`~provision_engine.models.step.Step` objects for both, wiring
declared resources so the executor snapshots them first.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from provision_engine.errors import StepTimeoutError
from provision_engine.executor.command import CommandRunner
from provision_engine.models.step import CommandResult, Step, StepAction, StepContext
from provision_engine.snapshot.backend import ResourceBackend

Command = Sequence[str]


def run_all(
    runner: CommandRunner,
    commands: Sequence[Command],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    deadline: float | None = None,
) -> CommandResult | None:
    """Run *commands* in order, stopping at the first failure.

    *deadline* is a :func:`time.monotonic` value; each command's timeout
    is cut to the time left, so the subprocess is killed when the step's
    own time runs out.

    Returns the result of the last command, or ``None`` when *commands*
    is empty.
    """
    result: CommandResult | None = None
    for cmd in commands:
        result = runner(cmd, cwd=cwd, env=env, timeout=_remaining(runner, deadline, cmd))
    return result


def _remaining(runner: CommandRunner, deadline: float | None, cmd: Command) -> float | None:
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise StepTimeoutError(0, what=f"step deadline before {' '.join(cmd)}")
    return left if runner.timeout is None else min(left, runner.timeout)


def _deadline(timeout_seconds: float | None) -> float | None:
    return None if timeout_seconds is None else time.monotonic() + timeout_seconds


def command_step(
    name: str,
    commands: Sequence[Command],
    *,
    runner: CommandRunner,
    undo_commands: Sequence[Command] | None = None,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    resources: Sequence[str] = (),
    timeout_seconds: float | None = None,
    continue_on_failure: bool = False,
    description: str = "",
) -> Step:
    """Build a step that runs *commands*, with *undo_commands* as its undo."""
    frozen = [list(c) for c in commands]

    def apply(_context: StepContext) -> CommandResult | None:
        return run_all(runner, frozen, cwd=cwd, env=env, deadline=_deadline(timeout_seconds))

    undo: StepAction | None = None
    if undo_commands:
        frozen_undo = [list(c) for c in undo_commands]

        def undo(_context: StepContext) -> CommandResult | None:
            return run_all(runner, frozen_undo, cwd=cwd, env=env)

    return Step(
        name=name,
        apply=apply,
        undo=undo,
        resources=tuple(resources),
        timeout_seconds=timeout_seconds,
        continue_on_failure=continue_on_failure,
        description=description,
    )


def file_step(
    name: str,
    path: str,
    content: str | Callable[[], str],
    *,
    backend: ResourceBackend,
    mode: int | None = None,
    runner: CommandRunner | None = None,
    after: Sequence[Command] = (),
    undo: StepAction | None = None,
    timeout_seconds: float | None = None,
    description: str = "",
) -> Step:
    """Build a step that writes *content* to *path* and then runs *after*.

    *content* may be a callable so the rendering happens when the step
    runs rather than when the pipeline is defined.  The previous file is
    restored from the snapshot on rollback; *undo* is only needed for
    side effects beyond the file itself.
    """
    if after and runner is None:
        raise ValueError(f"Step {name}: a runner is required to run follow-up commands")
    frozen_after = [list(c) for c in after]

    def apply(_context: StepContext) -> CommandResult | None:
        deadline = _deadline(timeout_seconds)
        rendered = content() if callable(content) else content
        backend.write(path, rendered.encode("utf-8"), mode)
        if runner is None:
            return None
        return run_all(runner, frozen_after, deadline=deadline)

    return Step(
        name=name,
        apply=apply,
        undo=undo,
        resources=(path,),
        timeout_seconds=timeout_seconds,
        description=description,
    )
