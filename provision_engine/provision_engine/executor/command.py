"""Thin wrapper around :func:`subprocess.run` for step actions.

Every external tool (package manager, service manager, certificate
issuer) is invoked through :func:`run_command` with an explicit timeout,
so callers receive :class:`ExternalCommandFailedError` or
:class:`StepTimeoutError` with descriptive messages rather than raw
subprocess failures.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from provision_engine.errors import ExternalCommandFailedError, StepTimeoutError
from provision_engine.models.step import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0

# Exit code reported when the executable cannot be found, matching the shell.
_NOT_FOUND_EXIT_CODE = 127


def build_command(
    cmd: Sequence[str],
    *,
    sudo: bool = False,
    env: Mapping[str, str] | None = None,
) -> list[str]:
    """Return the argv to execute, prefixing ``sudo`` and inline env assignments when needed."""
    argv = list(cmd)
    if not sudo:
        return argv
    assignments = [f"{k}={v}" for k, v in (env or {}).items()]
    return ["sudo", *assignments, *argv]


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    env: Mapping[str, str] | None = None,
    sudo: bool = False,
    input_text: str | None = None,
    check: bool = True,
) -> CommandResult:
    """Execute *cmd* and return its captured output.

    Parameters
    ----------
    cmd:
        Command list (e.g. ``["systemctl", "daemon-reload"]``).
    cwd:
        Working directory passed to the subprocess.
    timeout:
        Seconds before the command is killed and reported as timed out.
    env:
        Extra environment variables.  With ``sudo`` they are passed as
        ``VAR=value`` arguments so they survive the privilege switch.
    sudo:
        Prefix the command with ``sudo``.
    input_text:
        Text written to the command's stdin.
    check:
        Raise on a non-zero exit code.  When ``False`` the exit code is
        returned in the :class:`CommandResult`.

    Raises
    ------
    ExternalCommandFailedError
        On non-zero exit (with ``check``) or if the executable is missing.
    StepTimeoutError
        If the command runs longer than *timeout*.
    """
    argv = build_command(cmd, sudo=sudo, env=env)
    process_env = None
    if env and not sudo:
        process_env = {**os.environ, **env}

    logger.debug("Running command: %s", " ".join(argv))
    start = time.monotonic()
    try:
        completed = subprocess.run(
            argv,
            cwd=cwd,
            env=process_env,
            input=input_text,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise StepTimeoutError(float(timeout or 0), what=" ".join(argv)) from exc
    except FileNotFoundError as exc:
        raise ExternalCommandFailedError(
            argv, _NOT_FOUND_EXIT_CODE, f"executable not found: {argv[0]}"
        ) from exc

    result = CommandResult(
        command=argv,
        exit_code=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    if check and completed.returncode != 0:
        raise ExternalCommandFailedError(argv, completed.returncode, result.stderr.strip())
    return result


class CommandRunner:
    """Binds the host-wide command options (sudo, default timeout) once.

    Recipes receive a runner instead of calling :func:`run_command`
    directly, so tests can substitute a fake that records invocations.
    """

    def __init__(
        self,
        *,
        sudo: bool = False,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.sudo = sudo
        self.timeout = timeout

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
        """Run *cmd*; ``privileged=False`` skips sudo even when the runner uses it."""
        return run_command(
            cmd,
            cwd=cwd,
            env=env,
            sudo=self.sudo and privileged,
            timeout=timeout if timeout is not None else self.timeout,
            check=check,
        )
