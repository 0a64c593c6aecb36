"""Data models for pre-flight and post-run checks."""

from __future__ import annotations

import time

from pydantic import BaseModel, Field


class CheckResult(BaseModel):
    """The outcome of evaluating a single check."""

    name: str = Field(..., min_length=1, description="Name of the check that produced this result.")
    passed: bool = Field(..., description="Whether the checked condition holds.")
    required: bool = Field(
        default=True,
        description="Required failures abort a run; advisory failures only warn.",
    )
    detail: str = Field(default="", description="Human-readable explanation of the result.")
    duration_ms: int = Field(default=0, description="Evaluation time in milliseconds.")

    @property
    def is_blocking(self) -> bool:
        """True when this result must stop a run from starting."""
        return self.required and not self.passed

    @property
    def is_warning(self) -> bool:
        return not self.required and not self.passed


class VerificationWarning(BaseModel):
    """A post-run verification that did not hold.  Never triggers rollback."""

    check_name: str
    detail: str = ""


class CheckSummary(BaseModel):
    """Aggregated counts over a list of check results."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    blocking: int = 0
    warnings: int = 0
    results: list[CheckResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.blocking == 0

    @staticmethod
    def from_results(results: list[CheckResult]) -> CheckSummary:
        """Build a summary, keeping *results* in evaluation order."""
        return CheckSummary(
            total=len(results),
            passed=sum(1 for r in results if r.passed),
            failed=sum(1 for r in results if not r.passed),
            blocking=sum(1 for r in results if r.is_blocking),
            warnings=sum(1 for r in results if r.is_warning),
            results=list(results),
        )


class Timer:
    """Simple monotonic timer for measuring check and step duration."""

    def __init__(self) -> None:
        self._start: float = 0.0

    def start(self) -> None:
        self._start = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)
