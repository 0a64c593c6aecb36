"""Check orchestration for pre-flight preconditions and post-run verification.

Both the :class:`PreconditionChecker` and the :class:`Verifier` evaluate
every check they are given, in order, even after a failure, so the
operator sees the whole diagnostic picture at once.  A check that raises
is reported as a failed result rather than propagated.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from provision_engine.checks.base import BaseCheck
from provision_engine.checks.models import CheckResult, CheckSummary, Timer, VerificationWarning
from provision_engine.errors import PreconditionFailedError

logger = logging.getLogger(__name__)


def run_checks(checks: Sequence[BaseCheck]) -> list[CheckResult]:
    """Execute *checks* in order and return one result per check."""
    results: list[CheckResult] = []
    for check in checks:
        logger.debug("Running check: %s", check.name)
        timer = Timer()
        timer.start()
        try:
            result = check.execute()
        except Exception as exc:
            logger.error("Check %s raised an unhandled exception: %s", check.name, exc)
            result = CheckResult(
                name=check.name,
                passed=False,
                required=check.required,
                detail=f"Unhandled error in {check.name}: {exc}",
                duration_ms=timer.elapsed_ms(),
            )
        results.append(result)
    return results


class PreconditionChecker:
    """Runs read-only validations before any mutation begins."""

    def run(self, checks: Sequence[BaseCheck]) -> list[CheckResult]:
        """Evaluate all *checks* and log a warning for every advisory failure."""
        results = run_checks(checks)
        summary = CheckSummary.from_results(results)
        for result in results:
            if result.is_blocking:
                logger.error("Precondition failed: %s -- %s", result.name, result.detail)
            elif result.is_warning:
                logger.warning("Advisory precondition failed: %s -- %s", result.name, result.detail)
        logger.info(
            "Preconditions: %d passed, %d blocking, %d warning(s)",
            summary.passed,
            summary.blocking,
            summary.warnings,
        )
        return results

    def require(self, checks: Sequence[BaseCheck]) -> list[CheckResult]:
        """Like :meth:`run`, but raise :class:`PreconditionFailedError` on a blocking failure."""
        results = self.run(checks)
        blocking = [r for r in results if r.is_blocking]
        if blocking:
            raise PreconditionFailedError(blocking)
        return results


class Verifier:
    """Runs post-run checks asserting the desired end state.

    A failed verification never triggers rollback: the mutation is already
    done and undoing it automatically could itself be destructive.
    """

    def verify(self, checks: Sequence[BaseCheck]) -> list[CheckResult]:
        results = run_checks(checks)
        for result in results:
            if not result.passed:
                logger.warning("Verification failed: %s -- %s", result.name, result.detail)
        return results

    @staticmethod
    def warnings_for(results: Sequence[CheckResult]) -> list[VerificationWarning]:
        """Turn failed verification results into report warnings."""
        return [VerificationWarning(check_name=r.name, detail=r.detail) for r in results if not r.passed]
