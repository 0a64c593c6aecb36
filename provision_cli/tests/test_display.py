"""Tests for provision_cli/display.py -- Rich output formatting.

Output is captured via a Console writing to a StringIO buffer with
colour disabled, so assertions run against plain text.
"""

from __future__ import annotations

import io

from rich.console import Console

from provision_engine.checks.models import CheckResult, VerificationWarning
from provision_engine.errors import StepErrorKind
from provision_engine.models.run import (
    PipelineResult,
    PipelineStatus,
    StepFailure,
    StepOutcome,
    StepStatus,
    UndoOutcome,
    UndoStatus,
)
from provision_engine.models.snapshot import RestoreOutcome, RestoreReport, RestoreStatus
from provision_engine.models.step import Step
from provision_engine.orchestrator import PipelineDefinition

from provision_cli.display import (
    _STATUS_COLOURS,
    _coloured_status,
    display_check_results,
    display_pipeline_result,
    display_plan,
    display_restore_report,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _capture_console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    console = Console(file=buf, no_color=True, highlight=False, width=160)
    return console, buf


def _noop(_context) -> None:
    return None


def _rolled_back_result() -> PipelineResult:
    return PipelineResult(
        run_id="run_abc",
        pipeline_name="deploy",
        status=PipelineStatus.ROLLED_BACK,
        step_outcomes=[
            StepOutcome(step_name="env-file", status=StepStatus.SUCCEEDED, duration_ms=12),
            StepOutcome(
                step_name="start-service",
                status=StepStatus.FAILED,
                failure=StepFailure(
                    kind=StepErrorKind.EXTERNAL_COMMAND_FAILED,
                    detail="Command failed with exit code 3: systemctl is-active fastapi",
                    exit_code=3,
                    stderr="ModuleNotFoundError: No module named 'main'",
                ),
            ),
            StepOutcome(step_name="nginx-site", status=StepStatus.NOT_RUN),
        ],
        undo_outcomes=[
            UndoOutcome(
                step_name="systemd-unit",
                status=UndoStatus.FAILED,
                failure=StepFailure(kind=StepErrorKind.EXTERNAL_COMMAND_FAILED, detail="daemon-reload failed"),
            ),
            UndoOutcome(step_name="env-file", status=UndoStatus.NO_UNDO),
        ],
        restore_report=RestoreReport(
            snapshot_id="snap_1",
            outcomes=[
                RestoreOutcome(resource_id="/etc/systemd/system/fastapi.service", status=RestoreStatus.RESTORED),
                RestoreOutcome(
                    resource_id="/home/ubuntu/shop/.env",
                    status=RestoreStatus.FAILED,
                    reason="PermissionError: denied",
                ),
            ],
        ),
        failure=StepFailure(
            kind=StepErrorKind.EXTERNAL_COMMAND_FAILED,
            detail="Command failed with exit code 3: systemctl is-active fastapi",
            stderr="ModuleNotFoundError: No module named 'main'",
        ),
        failed_step="start-service",
    )


# ---------------------------------------------------------------------------
# Status colours
# ---------------------------------------------------------------------------


class TestColouredStatus:
    def test_known_status(self):
        assert _coloured_status("SUCCEEDED") == "[green]SUCCEEDED[/green]"
        assert _coloured_status("FAILED") == "[red]FAILED[/red]"

    def test_unknown_status_defaults_to_white(self):
        assert _coloured_status("WHATEVER") == "[white]WHATEVER[/white]"

    def test_every_step_and_undo_status_mapped(self):
        for status in (*StepStatus, *UndoStatus, RestoreStatus.RESTORED):
            assert status.value in _STATUS_COLOURS


# ---------------------------------------------------------------------------
# display_plan
# ---------------------------------------------------------------------------


class TestDisplayPlan:
    def test_lists_steps_in_order(self):
        console, buf = _capture_console()
        definition = PipelineDefinition(
            name="deploy",
            steps=(
                Step(name="system-update", apply=_noop, description="Refresh package lists"),
                Step(name="nginx-site", apply=_noop, undo=_noop, resources=("/etc/nginx/sites-available/shop",)),
                Step(name="tls-certificate", apply=_noop, continue_on_failure=True),
            ),
        )

        display_plan(console, definition)
        output = buf.getvalue()

        assert "Pipeline: deploy" in output
        assert output.index("system-update") < output.index("nginx-site") < output.index("tls-certificate")
        assert "/etc/nginx/sites-available/shop" in output
        assert "continue" in output
        assert "roll back" in output
        assert "0 precondition(s), 0 verification(s)" in output


# ---------------------------------------------------------------------------
# display_check_results
# ---------------------------------------------------------------------------


class TestDisplayCheckResults:
    def test_summary_counts(self):
        console, buf = _capture_console()
        display_check_results(
            console,
            "Preconditions",
            [
                CheckResult(name="application directory", passed=True),
                CheckResult(name="main.py present", passed=False, detail="/srv/shop/main.py not found"),
                CheckResult(name="port free: 80", passed=False, required=False, detail="in use"),
            ],
        )
        output = buf.getvalue()

        assert "main.py present" in output
        assert "/srv/shop/main.py not found" in output
        assert "3 check(s)" in output
        assert "1 failed" in output
        assert "1 warning(s)" in output

    def test_all_passed(self):
        console, buf = _capture_console()
        display_check_results(console, "Verification", [CheckResult(name="http responds", passed=True)])
        assert "all passed" in buf.getvalue()

    def test_empty(self):
        console, buf = _capture_console()
        display_check_results(console, "Verification", [])
        assert "No verification to run" in buf.getvalue()


# ---------------------------------------------------------------------------
# display_pipeline_result
# ---------------------------------------------------------------------------


class TestDisplayPipelineResult:
    def test_success(self):
        console, buf = _capture_console()
        result = PipelineResult(
            run_id="run_ok",
            pipeline_name="redeploy",
            status=PipelineStatus.SUCCEEDED,
            step_outcomes=[StepOutcome(step_name="git-pull", status=StepStatus.SUCCEEDED, duration_ms=1500)],
            warnings=["Step tls-certificate failed and was skipped: rate limited"],
            verification_warnings=[VerificationWarning(check_name="http responds", detail="status 502")],
        )

        display_pipeline_result(console, result)
        output = buf.getvalue()

        assert "Provisioning Result" in output
        assert "run_ok" in output
        assert "1.50s" in output
        assert "warning: Step tls-certificate failed and was skipped: rate limited" in output
        assert "verification: http responds: status 502" in output
        assert "Undo" not in output

    def test_rollback_lists_residual_discrepancies(self):
        console, buf = _capture_console()
        display_pipeline_result(console, _rolled_back_result())
        output = buf.getvalue()

        assert "Step start-service failed" in output
        assert "ModuleNotFoundError" in output
        assert "Restore of snap_1" in output
        assert "NOT_RUN" in output
        assert "Rollback left the host partially changed" in output
        assert "undo of systemd-unit failed: daemon-reload failed" in output
        assert "restore of /home/ubuntu/shop/.env failed: PermissionError: denied" in output

    def test_aborted_before_running(self):
        console, buf = _capture_console()
        result = PipelineResult(
            run_id="run_pending",
            status=PipelineStatus.PENDING,
            precondition_results=[CheckResult(name="configuration complete", passed=False, detail="db_password")],
            step_outcomes=[StepOutcome(step_name="system-update", status=StepStatus.NOT_RUN)],
            failure=StepFailure(
                kind=StepErrorKind.PRECONDITION_FAILED,
                detail="Required precondition(s) failed: configuration complete",
            ),
        )

        display_pipeline_result(console, result)
        output = buf.getvalue()

        assert "Aborted before any step ran" in output
        assert "Required precondition(s) failed: configuration complete" in output
        assert "Provisioning Result" not in output


# ---------------------------------------------------------------------------
# display_restore_report
# ---------------------------------------------------------------------------


class TestDisplayRestoreReport:
    def test_empty_snapshot(self):
        console, buf = _capture_console()
        display_restore_report(console, RestoreReport(snapshot_id="snap_empty"))
        assert "nothing to restore" in buf.getvalue()

    def test_outcomes(self):
        console, buf = _capture_console()
        display_restore_report(console, _rolled_back_result().restore_report)
        output = buf.getvalue()
        assert "RESTORED" in output
        assert "PermissionError: denied" in output
