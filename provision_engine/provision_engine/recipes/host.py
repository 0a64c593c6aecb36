"""Host operations shared by the deploy and redeploy recipes."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from provision_engine.errors import ExternalCommandFailedError
from provision_engine.executor.command import CommandRunner
from provision_engine.models.step import CommandResult

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

# Journal lines attached to a failed service start.
_JOURNAL_LINES = 50


def apt_install(runner: CommandRunner, packages: Sequence[str]) -> CommandResult:
    return runner(["apt-get", "install", "-y", *packages], env=APT_ENV)


def journal_tail(runner: CommandRunner, service: str, lines: int = _JOURNAL_LINES) -> str:
    """Return the last *lines* journal entries for *service*, or an empty string."""
    result = runner(["journalctl", "-u", service, "-n", str(lines), "--no-pager"], check=False, timeout=30)
    return result.stdout.strip()


def wait_until_active(
    runner: CommandRunner,
    service: str,
    *,
    attempts: int = 5,
    interval_seconds: float = 1.0,
) -> CommandResult:
    """Poll ``systemctl is-active`` until *service* reports active.

    Raises
    ------
    ExternalCommandFailedError
        If the service is still not active after *attempts* polls.  The
        error carries the tail of the service journal as its stderr.
    """
    cmd = ["systemctl", "is-active", service]
    result = runner(cmd, check=False, timeout=30)
    for _ in range(attempts - 1):
        if result.exit_code == 0:
            break
        time.sleep(interval_seconds)
        result = runner(cmd, check=False, timeout=30)

    if result.exit_code != 0:
        logger.error("Service %s did not become active (state: %s)", service, result.stdout.strip() or "unknown")
        raise ExternalCommandFailedError(result.command, result.exit_code, journal_tail(runner, service))
    return result


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def sql_identifier(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'
