"""First-time deployment of a gunicorn/uvicorn web application.

The pipeline provisions a fresh Ubuntu host end to end: system packages,
a virtualenv, PostgreSQL, the application's ``.env``, a systemd unit,
an nginx reverse proxy and a Let's Encrypt certificate.  Configuration
files the pipeline writes are declared as step resources, so a failed
run restores them to their previous contents before the undo actions
restart or disable the affected services.
"""

from __future__ import annotations

import logging

from provision_engine.checks.base import BaseCheck
from provision_engine.checks.builtin import (
    CurrentUserCheck,
    DirectoryExistsCheck,
    FileExistsCheck,
    HttpStatusCheck,
    NetworkReachableCheck,
    PortFreeCheck,
    RequiredSettingsCheck,
    ServiceActiveCheck,
    WritableDirectoryCheck,
)
from provision_engine.config import Settings
from provision_engine.errors import StepTimeoutError
from provision_engine.executor.command import CommandRunner
from provision_engine.executor.steps import command_step, file_step, run_all
from provision_engine.models.step import CommandResult, Step, StepContext
from provision_engine.orchestrator import PipelineDefinition
from provision_engine.recipes.host import (
    APT_ENV,
    apt_install,
    sql_identifier,
    sql_literal,
    wait_until_active,
)
from provision_engine.recipes.templates import render_env_file, render_nginx_site, render_systemd_unit
from provision_engine.snapshot.backend import FileSystemBackend, ResourceBackend

logger = logging.getLogger(__name__)

PIPELINE_NAME = "deploy"

BUILD_PACKAGES = (
    "libpq-dev",
    "python3-dev",
    "build-essential",
    "libgl1",
    "libglib2.0-0",
    "libsm6",
    "libxrender1",
    "libxext6",
)

_SYSTEMD_WANTS_DIR = "multi-user.target.wants"


def build_deploy_pipeline(
    settings: Settings,
    *,
    runner: CommandRunner | None = None,
    backend: ResourceBackend | None = None,
) -> PipelineDefinition:
    """Return the first-time deployment pipeline for *settings*.

    Parameters
    ----------
    settings:
        Loaded deployment settings.  Rendering happens when each step
        runs, so incomplete settings are caught by the preconditions
        rather than here.
    runner:
        Command runner; defaults to one honouring ``use_sudo`` and
        ``command_timeout_seconds``.
    backend:
        Resource backend for configuration files; defaults to the local
        filesystem.
    """
    runner = runner or CommandRunner(sudo=settings.use_sudo, timeout=settings.command_timeout_seconds)
    backend = backend or FileSystemBackend()
    env_path = str(settings.app_path / ".env")
    owner = f"{settings.service_user}:{settings.service_user}"

    steps = [
        _system_update(settings, runner),
        _system_packages(settings, runner),
        _virtualenv(settings, runner),
        _postgresql(settings, runner),
        file_step(
            "env-file",
            env_path,
            lambda: render_env_file(settings),
            backend=backend,
            mode=0o600,
            runner=runner,
            after=[["chown", owner, env_path]],
            timeout_seconds=settings.step_timeout_seconds,
            description="Write the application's .env with the database URL",
        ),
        _smoke_test(settings, runner),
        _systemd_unit(settings, runner, backend),
        _start_service(settings, runner),
        _nginx_site(settings, runner, backend),
        _nginx_reload(settings, runner),
        _tls_certificate(settings, runner),
    ]

    return PipelineDefinition(
        name=PIPELINE_NAME,
        steps=tuple(steps),
        preconditions=deploy_preconditions(settings),
        verifications=deploy_verifications(settings, runner),
    )


def deploy_preconditions(settings: Settings) -> tuple[BaseCheck, ...]:
    app_dir = settings.app_path
    return (
        RequiredSettingsCheck(settings),
        DirectoryExistsCheck(app_dir, label="application directory"),
        FileExistsCheck(app_dir / "requirements.txt", label="requirements.txt present"),
        FileExistsCheck(app_dir / "main.py", label="main.py present"),
        NetworkReachableCheck(settings.connectivity_host, 443),
        WritableDirectoryCheck(settings.systemd_dir),
        WritableDirectoryCheck(settings.nginx_sites_available),
        PortFreeCheck(80),
        PortFreeCheck(443),
        CurrentUserCheck(settings.service_user),
    )


def deploy_verifications(settings: Settings, runner: CommandRunner) -> tuple[BaseCheck, ...]:
    return (
        ServiceActiveCheck(settings.service_name, runner=runner),
        ServiceActiveCheck("nginx", runner=runner),
        ServiceActiveCheck("postgresql", runner=runner),
        HttpStatusCheck(settings.health_url, settings.health_statuses),
    )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _system_update(settings: Settings, runner: CommandRunner) -> Step:
    return command_step(
        "system-update",
        [["apt-get", "update"], ["apt-get", "upgrade", "-y"]],
        runner=runner,
        env=APT_ENV,
        timeout_seconds=settings.step_timeout_seconds,
        description="Refresh package lists and upgrade installed packages",
    )


def _system_packages(settings: Settings, runner: CommandRunner) -> Step:
    return command_step(
        "system-packages",
        [["apt-get", "install", "-y", settings.python_venv_package, *BUILD_PACKAGES]],
        runner=runner,
        env=APT_ENV,
        timeout_seconds=settings.step_timeout_seconds,
        description="Install the Python toolchain and native build dependencies",
    )


def _virtualenv(settings: Settings, runner: CommandRunner) -> Step:
    app_dir = settings.app_path
    venv = settings.venv_path

    def apply(_context: StepContext) -> CommandResult | None:
        if venv.exists():
            logger.warning("Virtual environment %s already exists, recreating it", venv)
        # The virtualenv belongs to the invoking user, not root.
        result = None
        for cmd in (
            ["rm", "-rf", str(venv)],
            ["python3", "-m", "venv", str(venv)],
            [str(venv / "bin" / "pip"), "install", "--upgrade", "pip", "setuptools", "wheel"],
            [str(venv / "bin" / "pip"), "install", "-r", "requirements.txt"],
        ):
            result = runner(cmd, privileged=False, cwd=app_dir)
        return result

    return Step(
        name="virtualenv",
        apply=apply,
        timeout_seconds=settings.step_timeout_seconds,
        description="Recreate the virtualenv and install requirements.txt",
    )


def _postgresql(settings: Settings, runner: CommandRunner) -> Step:
    def psql(sql: str, *flags: str) -> CommandResult:
        return runner(["sudo", "-u", "postgres", "psql", *flags, "-c", sql], privileged=False)

    def apply(_context: StepContext) -> CommandResult:
        apt_install(runner, ["postgresql", "postgresql-contrib"])
        runner(["systemctl", "start", "postgresql"])
        runner(["systemctl", "enable", "postgresql"])

        exists = psql(f"SELECT 1 FROM pg_database WHERE datname = {sql_literal(settings.db_name)}", "-tA")
        if exists.stdout.strip() == "1":
            logger.info("Database %s already exists", settings.db_name)
        else:
            psql(f"CREATE DATABASE {sql_identifier(settings.db_name)};")

        password = settings.db_password.get_secret_value() if settings.db_password else ""
        return psql(f"ALTER USER {sql_identifier(settings.db_user)} PASSWORD {sql_literal(password)};")

    return Step(
        name="postgresql",
        apply=apply,
        timeout_seconds=settings.step_timeout_seconds,
        description="Install PostgreSQL, create the database and set the user password",
    )


def _smoke_test(settings: Settings, runner: CommandRunner) -> Step:
    gunicorn = settings.venv_path / "bin" / "gunicorn"
    cmd = [str(gunicorn), "-w", "1", "-k", settings.worker_class, "main:app", "--bind", settings.bind_address]

    def apply(_context: StepContext) -> str:
        # A healthy server keeps running until the timeout kills it.
        try:
            result = runner(cmd, privileged=False, cwd=settings.app_path, timeout=settings.smoke_test_seconds)
        except StepTimeoutError:
            return f"Application served for {settings.smoke_test_seconds}s without exiting"
        return f"Application exited with code {result.exit_code} during the smoke test"

    return Step(
        name="smoke-test",
        apply=apply,
        continue_on_failure=True,
        description="Start gunicorn briefly to catch import and startup errors",
    )


def _systemd_unit(settings: Settings, runner: CommandRunner, backend: ResourceBackend) -> Step:
    unit_path = str(settings.unit_path)
    service = settings.service_name

    def apply(_context: StepContext) -> CommandResult | None:
        backend.write(unit_path, render_systemd_unit(settings).encode("utf-8"), 0o644)
        return run_all(runner, [["systemctl", "daemon-reload"], ["systemctl", "enable", service]])

    def undo(context: StepContext) -> CommandResult | None:
        if context.existed_before(unit_path):
            # The previous unit file is already back in place.
            return run_all(runner, [["systemctl", "daemon-reload"], ["systemctl", "restart", service]])
        wants_link = settings.systemd_dir / _SYSTEMD_WANTS_DIR / f"{service}.service"
        return run_all(
            runner,
            [
                ["systemctl", "stop", service],
                ["rm", "-f", str(wants_link)],
                ["systemctl", "daemon-reload"],
            ],
        )

    return Step(
        name="systemd-unit",
        apply=apply,
        undo=undo,
        resources=(unit_path,),
        timeout_seconds=settings.step_timeout_seconds,
        description=f"Install and enable the {service} systemd unit",
    )


def _start_service(settings: Settings, runner: CommandRunner) -> Step:
    service = settings.service_name

    def apply(_context: StepContext) -> CommandResult:
        runner(["systemctl", "restart", service])
        return wait_until_active(runner, service)

    return Step(
        name="start-service",
        apply=apply,
        timeout_seconds=settings.step_timeout_seconds,
        description=f"Start {service} and wait for it to report active",
    )


def _nginx_site(settings: Settings, runner: CommandRunner, backend: ResourceBackend) -> Step:
    site_path = str(settings.site_path)
    site_link = str(settings.site_link)

    def apply(_context: StepContext) -> CommandResult | None:
        apt_install(runner, ["nginx"])
        backend.write(site_path, render_nginx_site(settings).encode("utf-8"), 0o644)
        return runner(["ln", "-sf", site_path, site_link])

    def undo(context: StepContext) -> CommandResult | None:
        commands = []
        if not context.existed_before(site_path):
            commands.append(["rm", "-f", site_link])
        commands += [["nginx", "-t"], ["systemctl", "restart", "nginx"]]
        return run_all(runner, commands)

    return Step(
        name="nginx-site",
        apply=apply,
        undo=undo,
        resources=(site_path,),
        timeout_seconds=settings.step_timeout_seconds,
        description="Write and enable the nginx reverse-proxy site",
    )


def _nginx_reload(settings: Settings, runner: CommandRunner) -> Step:
    return command_step(
        "nginx-reload",
        [["nginx", "-t"], ["systemctl", "restart", "nginx"], ["systemctl", "enable", "nginx"]],
        runner=runner,
        timeout_seconds=settings.step_timeout_seconds,
        description="Validate the nginx configuration and restart nginx",
    )


def _tls_certificate(settings: Settings, runner: CommandRunner) -> Step:
    domain_args = [arg for name in settings.server_names for arg in ("-d", name)]

    def apply(_context: StepContext) -> str:
        apt_install(runner, ["certbot", "python3-certbot-nginx"])
        runner(
            [
                "certbot",
                "--nginx",
                *domain_args,
                "--non-interactive",
                "--agree-tos",
                "--email",
                settings.admin_email,
                "--redirect",
            ]
        )
        timer = runner(["systemctl", "is-active", "certbot.timer"], check=False, timeout=30)
        return f"Certificate issued; renewal timer is {timer.stdout.strip() or 'unknown'}"

    return Step(
        name="tls-certificate",
        apply=apply,
        continue_on_failure=True,
        timeout_seconds=settings.step_timeout_seconds,
        description="Obtain a Let's Encrypt certificate; the site stays on HTTP if this fails",
    )

