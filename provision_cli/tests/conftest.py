"""Shared fixtures for CLI tests.

Settings are built in-process with every host path pointed into
``tmp_path``, and logging setup is patched out so a CLI invocation never
replaces the handlers pytest installs on the root logger.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

from provision_engine.config import Settings


@pytest.fixture()
def cli_settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        app_name="shop",
        app_dir=tmp_path / "shop",
        domain="shop.example.com",
        admin_email="ops@example.com",
        db_name="shop",
        db_password="s3cret",
        audit_root=tmp_path / "audit",
        lock_path=tmp_path / "provision.lock",
        use_sudo=False,
    )


@pytest.fixture()
def patched_settings(cli_settings: Settings) -> Iterator[Settings]:
    """Make every command load *cli_settings* instead of the environment."""
    with (
        patch("provision_cli.app.load_settings", return_value=cli_settings),
        patch("provision_cli.app.configure_logging"),
    ):
        yield cli_settings
