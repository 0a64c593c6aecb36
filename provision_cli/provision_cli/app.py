"""provision CLI application -- Typer-based operator interface.

Provides commands to deploy and redeploy a web application, preview a
recipe's steps, run its pre-flight or post-deploy checks on their own,
and restore a retained snapshot.  Human-readable output goes to *stderr*
via Rich; ``--json`` writes the machine-readable report to *stdout*.

Exit codes: 0 success, 1 rolled back or blocked by a precondition,
2 another run holds the host lock, 3 configuration or usage error.
"""

from __future__ import annotations

import json
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from provision_cli.display import (
    display_check_results,
    display_pipeline_result,
    display_plan,
    display_restore_report,
)
from provision_engine.config import Settings, load_settings
from provision_engine.errors import ConfigurationError, HostLockError, SnapshotError
from provision_engine.executor.pipeline import CancellationToken, new_run_id
from provision_engine.lock import HostLock
from provision_engine.logging_config import configure_logging
from provision_engine.orchestrator import PipelineDefinition, Provisioner
from provision_engine.recipes import RECIPES
from provision_engine.snapshot.backend import FileSystemBackend
from provision_engine.snapshot.store import SnapshotStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOCKED = 2
EXIT_CONFIG = 3

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="provision",
    help="provision - checkpointed deployment of Python web applications",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_config_file: Path | None = None
_debug: bool = False


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the deploy.config file (defaults to ./deploy.config when present).",
        envvar="DEPLOY_CONFIG_FILE",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _config_file, _debug  # noqa: PLW0603
    _json_output = json_mode
    _config_file = config_file
    _debug = debug


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load() -> Settings:
    """Load settings and configure logging, exiting with code 3 on error."""
    try:
        settings = load_settings(_config_file)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_CONFIG) from exc
    configure_logging(debug=_debug or settings.debug, structured=settings.structured_logging)
    return settings


def _definition(recipe: str, settings: Settings) -> PipelineDefinition:
    builder = RECIPES.get(recipe)
    if builder is None:
        console.print(f"[red]Unknown recipe '{recipe}'. Choose one of: {', '.join(sorted(RECIPES))}[/red]")
        raise typer.Exit(code=EXIT_CONFIG)
    return builder(settings)


def _snapshot_store(settings: Settings) -> SnapshotStore:
    return SnapshotStore(
        FileSystemBackend(),
        audit_root=settings.audit_root,
        retain=settings.retain_snapshots,
    )


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


@contextmanager
def _host_lock(settings: Settings, owner: str) -> Iterator[HostLock]:
    lock = HostLock(settings.lock_path, ttl_seconds=settings.lock_ttl_seconds, owner=owner)
    try:
        lock.acquire()
    except HostLockError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_LOCKED) from exc
    try:
        yield lock
    finally:
        lock.release()


@contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Turn Ctrl-C into a cancellation so the run rolls back after the current step."""

    def handler(_signum: int, _frame: object) -> None:
        console.print("[yellow]Interrupt received; rolling back after the current step...[/yellow]")
        token.cancel("interrupted by operator")

    previous: Callable[..., Any] | int | None = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_recipe(recipe: str, *, assume_yes: bool, prompt: str) -> None:
    settings = _load()
    definition = _definition(recipe, settings)

    if not assume_yes and not typer.confirm(prompt, default=False, err=True):
        console.print(f"[dim]{recipe.capitalize()} cancelled.[/dim]")
        raise typer.Exit(code=EXIT_OK)

    run_id = new_run_id()
    token = CancellationToken()
    provisioner = Provisioner(
        _snapshot_store(settings),
        cancel_token=token,
        abandon_grace_seconds=settings.abandon_grace_seconds,
    )

    with _host_lock(settings, run_id), _cancel_on_interrupt(token):
        result = provisioner.run(definition, run_id=run_id)

    if _json_output:
        sys.stdout.write(result.model_dump_json(indent=2) + "\n")
    else:
        display_pipeline_result(console, result)

    if not result.succeeded:
        raise typer.Exit(code=EXIT_FAILED)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def deploy(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Provision the host and deploy the application for the first time."""
    _run_recipe(
        "deploy",
        assume_yes=yes,
        prompt="This will install packages and rewrite service configuration on this host. Continue?",
    )


@app.command()
def redeploy(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Pull the latest code, update dependencies and restart the service."""
    _run_recipe(
        "redeploy",
        assume_yes=yes,
        prompt="This will update and restart your application. Continue?",
    )


@app.command()
def plan(
    recipe: str = typer.Argument(
        "deploy",
        help="Recipe to preview (deploy | redeploy).",
    ),
) -> None:
    """List the steps a recipe would run, without running them."""
    settings = _load()
    definition = _definition(recipe, settings)

    if _json_output:
        _write_json(
            {
                "pipeline": definition.name,
                "steps": [
                    {
                        "name": step.name,
                        "resources": list(step.resources),
                        "has_undo": step.undo is not None,
                        "continue_on_failure": step.continue_on_failure,
                        "timeout_seconds": step.timeout_seconds,
                        "description": step.description,
                    }
                    for step in definition.steps
                ],
                "preconditions": [c.name for c in definition.preconditions],
                "verifications": [c.name for c in definition.verifications],
            }
        )
    else:
        display_plan(console, definition)


@app.command()
def check(
    recipe: str = typer.Argument(
        "deploy",
        help="Recipe whose preconditions to evaluate (deploy | redeploy).",
    ),
) -> None:
    """Run a recipe's preconditions without changing anything."""
    settings = _load()
    definition = _definition(recipe, settings)
    results = Provisioner(_snapshot_store(settings)).check(definition.preconditions)

    if _json_output:
        _write_json([r.model_dump(mode="json") for r in results])
    else:
        display_check_results(console, "Preconditions", results)

    if any(r.is_blocking for r in results):
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def verify(
    recipe: str = typer.Argument(
        "deploy",
        help="Recipe whose post-deployment checks to run (deploy | redeploy).",
    ),
) -> None:
    """Run a recipe's post-deployment verifications against the live host."""
    settings = _load()
    definition = _definition(recipe, settings)
    results = Provisioner(_snapshot_store(settings)).verify(definition.verifications)

    if _json_output:
        _write_json([r.model_dump(mode="json") for r in results])
    else:
        display_check_results(console, "Verification", results)

    if any(not r.passed for r in results):
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def rollback(
    snapshot_dir: Path = typer.Argument(
        ...,
        help="Retained snapshot directory (contains manifest.json).",
        exists=True,
        file_okay=False,
        resolve_path=True,
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Restore every resource recorded in a retained snapshot."""
    settings = _load()
    try:
        snapshot = SnapshotStore.load(snapshot_dir)
    except SnapshotError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_CONFIG) from exc

    console.print(f"Snapshot [bold]{snapshot.snapshot_id}[/bold] holds {len(snapshot.entries)} resource(s).")
    if not yes and not typer.confirm("Restore them now?", default=False, err=True):
        console.print("[dim]Rollback cancelled.[/dim]")
        raise typer.Exit(code=EXIT_OK)

    with _host_lock(settings, f"rollback:{snapshot.snapshot_id}"):
        report = SnapshotStore(FileSystemBackend()).restore_snapshot(snapshot)

    if _json_output:
        sys.stdout.write(report.model_dump_json(indent=2) + "\n")
    else:
        display_restore_report(console, report)

    if not report.is_complete:
        raise typer.Exit(code=EXIT_FAILED)
