"""Unit tests for provision_engine.config."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import SecretStr

from provision_engine.config import Settings, load_settings
from provision_engine.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep host DEPLOY_* variables and a stray ./deploy.config out of the tests."""
    for key in list(os.environ):
        if key.startswith("DEPLOY_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Settings - default values
# ---------------------------------------------------------------------------


class TestSettingsDefaults:
    def test_default_service(self):
        settings = Settings()
        assert settings.service_name == "fastapi"
        assert settings.service_user == "ubuntu"

    def test_default_workers(self):
        assert Settings().workers == 4

    def test_default_health_statuses(self):
        assert Settings().health_statuses == [200, 307, 404]

    def test_default_secrets_none(self):
        settings = Settings()
        assert settings.db_password is None
        assert settings.secret_key is None

    def test_default_app_path_under_service_user_home(self):
        settings = Settings(app_name="shop")
        assert settings.app_path == Path("/home/ubuntu/shop")
        assert settings.venv_path == Path("/home/ubuntu/shop/venv")

    def test_default_lock_ttl(self):
        assert Settings().lock_ttl_seconds == 3600


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------


class TestSettingsEnvOverrides:
    def test_env_var_overrides_app_name(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DEPLOY_APP_NAME", "shop")
        assert Settings().app_name == "shop"

    def test_env_var_overrides_workers(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DEPLOY_WORKERS", "8")
        assert Settings().workers == 8

    def test_env_var_sets_app_dir(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DEPLOY_APP_DIR", "/srv/shop")
        assert Settings().app_path == Path("/srv/shop")

    def test_empty_password_treated_as_missing(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DEPLOY_DB_PASSWORD", "")
        assert Settings().db_password is None


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class TestSecrets:
    def test_password_masked_in_repr(self):
        settings = Settings(db_password="hunter2")
        assert isinstance(settings.db_password, SecretStr)
        assert "hunter2" not in repr(settings)
        assert settings.db_password.get_secret_value() == "hunter2"


# ---------------------------------------------------------------------------
# Derived paths
# ---------------------------------------------------------------------------


class TestDerivedPaths:
    def test_unit_and_site_paths(self):
        settings = Settings(service_name="shop")
        assert settings.unit_path == Path("/etc/systemd/system/shop.service")
        assert settings.site_path == Path("/etc/nginx/sites-available/shop")
        assert settings.site_link == Path("/etc/nginx/sites-enabled/shop")

    def test_server_names_skip_empty(self):
        assert Settings(domain="example.com").server_names == ["example.com"]
        assert Settings(domain="example.com", www_domain="www.example.com").server_names == [
            "example.com",
            "www.example.com",
        ]

    def test_missing_required(self):
        settings = Settings(app_name="shop", domain="example.com", db_name="shop")
        assert settings.missing_required() == ["db_password", "admin_email"]


# ---------------------------------------------------------------------------
# load_settings
# ---------------------------------------------------------------------------


class TestLoadSettings:
    def test_reads_config_file(self, tmp_path: Path):
        config = tmp_path / "deploy.config"
        config.write_text("DEPLOY_APP_NAME=shop\nDEPLOY_DOMAIN=shop.example.com\nDEPLOY_WORKERS=2\n")
        settings = load_settings(config)
        assert settings.app_name == "shop"
        assert settings.domain == "shop.example.com"
        assert settings.workers == 2

    def test_picks_up_default_config_in_cwd(self, tmp_path: Path):
        (tmp_path / "deploy.config").write_text("DEPLOY_APP_NAME=from-cwd\n")
        assert load_settings().app_name == "from-cwd"

    def test_env_beats_config_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        config = tmp_path / "deploy.config"
        config.write_text("DEPLOY_APP_NAME=from-file\n")
        monkeypatch.setenv("DEPLOY_APP_NAME", "from-env")
        assert load_settings(config).app_name == "from-env"

    def test_overrides(self):
        assert load_settings(app_name="override").app_name == "override"

    def test_missing_config_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(tmp_path / "nope.config")

    def test_invalid_value(self, tmp_path: Path):
        config = tmp_path / "deploy.config"
        config.write_text("DEPLOY_WORKERS=0\n")
        with pytest.raises(ConfigurationError, match="Invalid deployment configuration"):
            load_settings(config)
