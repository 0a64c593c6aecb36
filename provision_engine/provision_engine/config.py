"""Deployment configuration loaded from environment variables and ``deploy.config``."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from provision_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("deploy.config")

# Settings a first-time deployment cannot proceed without.
_REQUIRED_FOR_DEPLOY = ("app_name", "domain", "db_name", "db_user", "db_password", "admin_email")


class Settings(BaseSettings):
    """Deployment settings loaded from environment variables with DEPLOY_ prefix.

    The same keys may be written to ``deploy.config`` as ``DEPLOY_APP_DIR=...``
    lines; environment variables take precedence over the file.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_",
        env_file=DEFAULT_CONFIG_FILE,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False
    structured_logging: bool = False

    # Application
    app_name: str = ""
    app_dir: Path | None = None
    domain: str = ""
    www_domain: str = ""
    admin_email: str = ""
    secret_key: SecretStr | None = None

    # Database
    db_name: str = ""
    db_user: str = "postgres"
    db_password: SecretStr | None = None

    # Application server
    workers: int = Field(default=4, ge=1)
    worker_class: str = "uvicorn.workers.UvicornWorker"
    bind_address: str = "127.0.0.1:8000"
    service_name: str = "fastapi"
    service_user: str = "ubuntu"
    python_venv_package: str = "python3.12-venv"

    # Host layout
    systemd_dir: Path = Path("/etc/systemd/system")
    nginx_sites_available: Path = Path("/etc/nginx/sites-available")
    nginx_sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    client_max_body_size: str = "50M"

    # Execution
    use_sudo: bool = True
    command_timeout_seconds: float = Field(default=900.0, gt=0)
    step_timeout_seconds: float | None = None
    abandon_grace_seconds: float | None = Field(default=300.0, gt=0)
    smoke_test_seconds: int = Field(default=15, ge=1)

    # Snapshots and locking
    audit_root: Path = Path("/tmp/provision_snapshots")
    retain_snapshots: bool = True
    lock_path: Path = Path("/tmp/provision.lock")
    lock_ttl_seconds: int = 3600

    # Verification
    health_url: str = "http://localhost:8000"
    health_statuses: list[int] = Field(default_factory=lambda: [200, 307, 404])
    connectivity_host: str = "google.com"

    @field_validator("db_password", "secret_key", mode="before")
    @classmethod
    def mask_secret_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None or v == "":
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @property
    def app_path(self) -> Path:
        """Application directory, defaulting to the service user's home."""
        if self.app_dir is not None:
            return self.app_dir
        return Path("/home") / self.service_user / self.app_name

    @property
    def venv_path(self) -> Path:
        return self.app_path / "venv"

    @property
    def unit_path(self) -> Path:
        return self.systemd_dir / f"{self.service_name}.service"

    @property
    def site_path(self) -> Path:
        return self.nginx_sites_available / self.service_name

    @property
    def site_link(self) -> Path:
        return self.nginx_sites_enabled / self.service_name

    @property
    def server_names(self) -> list[str]:
        return [d for d in (self.domain, self.www_domain) if d]

    def missing_required(self) -> list[str]:
        """Return the deploy-critical settings that are unset or empty."""
        missing = []
        for key in _REQUIRED_FOR_DEPLOY:
            value = getattr(self, key)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(key)
        return missing


def load_settings(config_file: Path | None = None, **overrides: object) -> Settings:
    """Load settings from environment and *config_file*, with optional overrides for testing.

    Raises
    ------
    ConfigurationError
        If a value fails validation or *config_file* was given but does not exist.
    """
    if config_file is not None and not config_file.is_file():
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    try:
        if config_file is not None:
            settings = Settings(_env_file=config_file, **overrides)  # type: ignore[call-arg]
        else:
            settings = Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid deployment configuration:\n{exc}") from exc

    if settings.debug:
        logger.info("Loaded settings for application: %s", settings.app_name or "(unnamed)")

    return settings
