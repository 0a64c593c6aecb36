"""Pre-flight and post-run checks.

Quick start::

    from provision_engine.checks import PreconditionChecker, FunctionCheck

    checker = PreconditionChecker()
    results = checker.run([FunctionCheck("app dir", lambda: app_dir.is_dir())])
"""

from provision_engine.checks.base import BaseCheck, FunctionCheck
from provision_engine.checks.engine import PreconditionChecker, Verifier, run_checks
from provision_engine.checks.models import CheckResult, CheckSummary, VerificationWarning

__all__ = [
    "BaseCheck",
    "CheckResult",
    "CheckSummary",
    "FunctionCheck",
    "PreconditionChecker",
    "VerificationWarning",
    "Verifier",
    "run_checks",
]
