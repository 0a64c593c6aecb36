"""Code update for an application that was already deployed.

Pulls the latest code, refreshes dependencies, runs migrations and
restarts the service.  If the service does not come back, the run rolls
back: ``.env`` is restored from the snapshot, the checkout is reset to
the commit it was on before the pull, and the service is restarted on
the restored code.
"""

from __future__ import annotations

import logging

from provision_engine.checks.base import BaseCheck
from provision_engine.checks.builtin import (
    DirectoryExistsCheck,
    FileExistsCheck,
    HttpStatusCheck,
    ServiceActiveCheck,
)
from provision_engine.config import Settings
from provision_engine.executor.command import CommandRunner
from provision_engine.models.step import CommandResult, Step, StepContext
from provision_engine.orchestrator import PipelineDefinition
from provision_engine.recipes.host import wait_until_active

logger = logging.getLogger(__name__)

PIPELINE_NAME = "redeploy"


def build_redeploy_pipeline(settings: Settings, *, runner: CommandRunner | None = None) -> PipelineDefinition:
    """Return the redeploy pipeline for *settings*.

    The first step, ``service-checkpoint``, does nothing on the way in.
    Its undo runs last during a rollback, after the checkout has been
    reset, and reinstalls dependencies and restarts the service so the
    host ends up running the previous release.
    """
    runner = runner or CommandRunner(sudo=settings.use_sudo, timeout=settings.command_timeout_seconds)
    app_dir = settings.app_path
    pip = str(settings.venv_path / "bin" / "pip")
    service = settings.service_name
    timeout = settings.step_timeout_seconds

    def reinstall_requirements() -> CommandResult:
        return runner([pip, "install", "-r", "requirements.txt"], privileged=False, cwd=app_dir)

    # ------------------------------------------------------------------
    # service-checkpoint
    # ------------------------------------------------------------------

    def checkpoint(_context: StepContext) -> str:
        state = runner(["systemctl", "is-active", service], check=False, timeout=30)
        return f"{service} is {state.stdout.strip() or 'unknown'} before redeploy"

    def restart_previous_release(_context: StepContext) -> CommandResult:
        reinstall_requirements()
        runner(["systemctl", "restart", service])
        return wait_until_active(runner, service)

    # ------------------------------------------------------------------
    # git-pull
    # ------------------------------------------------------------------

    previous_head: dict[str, str] = {}

    def git_pull(_context: StepContext) -> CommandResult | str:
        if not (app_dir / ".git").is_dir():
            logger.warning("%s is not a git repository; make sure the latest code was uploaded", app_dir)
            return "Not a git repository; pull skipped"
        head = runner(["git", "rev-parse", "HEAD"], privileged=False, cwd=app_dir)
        previous_head["commit"] = head.stdout.strip()
        return runner(["git", "pull"], privileged=False, cwd=app_dir)

    def git_reset(_context: StepContext) -> CommandResult | None:
        commit = previous_head.get("commit")
        if not commit:
            return None
        logger.info("Resetting %s to %s", app_dir, commit)
        return runner(["git", "reset", "--hard", commit], privileged=False, cwd=app_dir)

    # ------------------------------------------------------------------
    # dependencies / migrations / restart
    # ------------------------------------------------------------------

    def dependencies(_context: StepContext) -> CommandResult:
        runner([pip, "install", "--upgrade", "pip"], privileged=False, cwd=app_dir)
        return reinstall_requirements()

    def migrations(_context: StepContext) -> CommandResult | str:
        bin_dir = settings.venv_path / "bin"
        if (app_dir / "alembic.ini").is_file():
            logger.info("Running alembic migrations")
            return runner([str(bin_dir / "alembic"), "upgrade", "head"], privileged=False, cwd=app_dir)
        if (app_dir / "manage.py").is_file():
            logger.info("Running Django migrations")
            return runner([str(bin_dir / "python"), "manage.py", "migrate"], privileged=False, cwd=app_dir)
        logger.warning("No migration system detected, skipping migrations")
        return "No migration system detected"

    def restart(_context: StepContext) -> CommandResult:
        runner(["systemctl", "restart", service])
        return wait_until_active(runner, service, attempts=3)

    steps = (
        Step(
            name="service-checkpoint",
            apply=checkpoint,
            undo=restart_previous_release,
            timeout_seconds=timeout,
            description="Restart the previous release if the redeploy rolls back",
        ),
        Step(
            name="git-pull",
            apply=git_pull,
            undo=git_reset,
            timeout_seconds=timeout,
            description="Pull the latest code when the app directory is a git checkout",
        ),
        Step(
            name="dependencies",
            apply=dependencies,
            timeout_seconds=timeout,
            description="Upgrade pip and install requirements.txt",
        ),
        Step(
            name="migrations",
            apply=migrations,
            timeout_seconds=timeout,
            description="Run alembic or Django migrations when present",
        ),
        Step(
            name="restart-service",
            apply=restart,
            resources=(str(app_dir / ".env"),),
            timeout_seconds=timeout,
            description=f"Restart {service} and require it to report active",
        ),
    )

    return PipelineDefinition(
        name=PIPELINE_NAME,
        steps=steps,
        preconditions=redeploy_preconditions(settings),
        verifications=(
            ServiceActiveCheck(service, runner=runner),
            HttpStatusCheck(settings.health_url, settings.health_statuses),
        ),
    )


def redeploy_preconditions(settings: Settings) -> tuple[BaseCheck, ...]:
    app_dir = settings.app_path
    return (
        DirectoryExistsCheck(app_dir, label="application directory"),
        DirectoryExistsCheck(settings.venv_path, label="virtualenv"),
        FileExistsCheck(app_dir / "requirements.txt", label="requirements.txt present"),
    )
