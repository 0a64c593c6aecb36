"""Host checks: services, the invoking user and deployment settings."""

from __future__ import annotations

import getpass

from provision_engine.checks.base import BaseCheck
from provision_engine.config import Settings
from provision_engine.errors import ExternalCommandFailedError, StepTimeoutError
from provision_engine.executor.command import CommandRunner


class ServiceActiveCheck(BaseCheck):
    """Passes when ``systemctl is-active`` reports *service* as active."""

    def __init__(self, service: str, *, runner: CommandRunner, required: bool = True) -> None:
        super().__init__(required=required)
        self.service = service
        self.runner = runner

    @property
    def name(self) -> str:
        return f"service active: {self.service}"

    def evaluate(self) -> tuple[bool, str]:
        try:
            result = self.runner(["systemctl", "is-active", self.service], check=False, timeout=30)
        except (ExternalCommandFailedError, StepTimeoutError) as exc:
            return False, f"Could not query {self.service}: {exc}"
        state = result.stdout.strip() or "unknown"
        if result.exit_code == 0:
            return True, f"{self.service} is {state}"
        return False, f"{self.service} is {state}"


class CurrentUserCheck(BaseCheck):
    """Passes when the process runs as *expected_user*.  Advisory by default."""

    def __init__(self, expected_user: str, *, required: bool = False) -> None:
        super().__init__(required=required)
        self.expected_user = expected_user

    @property
    def name(self) -> str:
        return f"running as {self.expected_user}"

    def evaluate(self) -> tuple[bool, str]:
        user = getpass.getuser()
        if user == self.expected_user:
            return True, f"Running as {user}"
        return False, f"Running as {user}; expected {self.expected_user}"


class RequiredSettingsCheck(BaseCheck):
    """Passes when every deploy-critical setting has a value."""

    def __init__(self, settings: Settings, *, required: bool = True) -> None:
        super().__init__(required=required)
        self.settings = settings

    @property
    def name(self) -> str:
        return "configuration complete"

    def evaluate(self) -> tuple[bool, str]:
        missing = self.settings.missing_required()
        if missing:
            keys = ", ".join(f"DEPLOY_{k.upper()}" for k in missing)
            return False, f"Missing required settings: {keys}"
        return True, "All required settings present"
