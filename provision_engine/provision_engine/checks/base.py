"""Abstract base class for check implementations.

Checks are read-only predicates over externally observable host state.
They are shared by the pre-flight :class:`PreconditionChecker` and the
post-run :class:`Verifier`; only the interpretation of a failure differs.
"""

from __future__ import annotations

import abc
from collections.abc import Callable

from provision_engine.checks.models import CheckResult, Timer
from provision_engine.timeouts import call_with_timeout


class BaseCheck(abc.ABC):
    """Abstract base for all check implementations.

    Subclasses implement :meth:`evaluate`, returning ``(passed, detail)``.
    Implementations must not mutate host state.

    Parameters
    ----------
    required:
        When ``True`` a failure blocks the run; otherwise it only warns.
    timeout_seconds:
        Optional bound on :meth:`evaluate`; expiry counts as a failure.
    """

    def __init__(self, *, required: bool = True, timeout_seconds: float | None = None) -> None:
        self.required = required
        self.timeout_seconds = timeout_seconds

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable, human-readable name used in reports."""

    @abc.abstractmethod
    def evaluate(self) -> tuple[bool, str]:
        """Evaluate the condition and return ``(passed, detail)``."""

    def execute(self) -> CheckResult:
        """Evaluate the check and wrap the outcome in a :class:`CheckResult`."""
        timer = Timer()
        timer.start()
        passed, detail = call_with_timeout(self.evaluate, self.timeout_seconds, what=f"check {self.name}")
        return CheckResult(
            name=self.name,
            passed=passed,
            required=self.required,
            detail=detail,
            duration_ms=timer.elapsed_ms(),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, required={self.required})"


class FunctionCheck(BaseCheck):
    """Adapts a plain predicate into a check.

    The predicate may return a bare ``bool`` or a ``(bool, detail)`` tuple.
    """

    def __init__(
        self,
        name: str,
        predicate: Callable[[], bool | tuple[bool, str]],
        *,
        required: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(required=required, timeout_seconds=timeout_seconds)
        self._name = name
        self._predicate = predicate

    @property
    def name(self) -> str:
        return self._name

    def evaluate(self) -> tuple[bool, str]:
        outcome = self._predicate()
        if isinstance(outcome, tuple):
            passed, detail = outcome
            return bool(passed), str(detail)
        return bool(outcome), ""
