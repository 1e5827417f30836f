"""Tests for profile-based configuration.

Covers profile selection, settings caching, legacy environment variables and
profile-specific .env files.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError as SchemaValidationError
from pytest_mock import MockerFixture

from banklink.config import (
    BankLinkSettings,
    DatabaseConfig,
    ScraperConfig,
    get_current_profile,
    get_settings,
    reload_settings,
    set_current_profile,
)

HEX_KEY = "ab" * 32


@pytest.fixture
def isolated_env(
    mocker: MockerFixture, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Empty environment plus a temporary working directory for .env files."""
    mocker.patch.dict(os.environ, {"BANKLINK_VAULT__ENCRYPTION_KEY": HEX_KEY}, clear=True)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestProfileConfiguration:
    """Test suite for profile-based configuration."""

    def test_default_profile_is_test(self) -> None:
        """Test that the profile is 'test' in the test environment."""
        assert get_current_profile() == "test"

    def test_set_current_profile(self) -> None:
        set_current_profile("alice")
        assert get_current_profile() == "alice"

    @pytest.mark.parametrize("profile", ["", "bad/profile", "bad profile"])
    def test_invalid_profile_rejected(self, profile: str) -> None:
        with pytest.raises(ValueError):
            set_current_profile(profile)
        assert get_current_profile() == "test"

    def test_settings_cached_per_profile(self, isolated_env: Path) -> None:
        set_current_profile("dev")
        first = get_settings()
        assert get_settings() is first
        assert first.profile == "dev"

        set_current_profile("prod")
        assert get_settings() is not first
        assert get_settings().profile == "prod"

    def test_reload_settings_clears_cache(self, isolated_env: Path) -> None:
        first = get_settings("dev")
        assert reload_settings("dev") is not first

    def test_missing_vault_key(
        self, mocker: MockerFixture, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mocker.patch.dict(os.environ, {}, clear=True)
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
            get_settings("dev")

    def test_profile_env_file(self, isolated_env: Path) -> None:
        (isolated_env / ".env.alice").write_text(
            "BANKLINK_CACHE__SUMMARY_TTL_SECONDS=60\n"
            "BANKLINK_SCRAPER__MAX_RETRIES=5\n"
        )

        alice = BankLinkSettings(profile="alice")
        bob = BankLinkSettings(profile="bob")

        assert alice.cache.summary_ttl_seconds == 60
        assert alice.scraper.max_retries == 5
        assert bob.cache.summary_ttl_seconds == 300

    def test_get_settings_creates_directories(self, isolated_env: Path) -> None:
        get_settings("dev")
        assert (isolated_env / "logs").is_dir()
        assert (isolated_env / "data" / "duckdb").is_dir()


class TestEnvironmentVariables:
    def test_nested_variables(self, isolated_env: Path, mocker: MockerFixture) -> None:
        mocker.patch.dict(
            os.environ,
            {
                "BANKLINK_SCRAPER__SERVICE_URL": "https://scraper.internal/",
                "BANKLINK_CACHE__INCOME_WINDOW_DAYS": "45",
            },
        )

        settings = BankLinkSettings(profile="dev")

        assert settings.scraper.service_url == "https://scraper.internal"
        assert settings.cache.income_window_days == 45
        assert settings.vault.encryption_key == HEX_KEY

    def test_legacy_variables(self, isolated_env: Path, mocker: MockerFixture) -> None:
        mocker.patch.dict(
            os.environ,
            {
                "PLAID_CLIENT_ID": "client",
                "PLAID_SECRET": "secret",
                "PLAID_ENV": "production",
                "ISRAEL_SCRAPER_URL": "http://localhost:4000",
                "ENCRYPTION_KEY": "legacy-passphrase-long-enough-to-be-accepted",
            },
            clear=True,
        )

        settings = BankLinkSettings(profile="dev")

        assert settings.plaid.client_id == "client"
        assert settings.plaid.environment == "production"
        assert settings.scraper.service_url == "http://localhost:4000"
        assert settings.vault.encryption_key.startswith("legacy-passphrase")

    def test_production_requires_plaid(
        self, isolated_env: Path, mocker: MockerFixture
    ) -> None:
        mocker.patch.dict(os.environ, {"BANKLINK_ENVIRONMENT": "production"})
        settings = BankLinkSettings(profile="dev")
        with pytest.raises(ValueError, match="PLAID_CLIENT_ID"):
            settings.validate_required_credentials()

    def test_production_rejects_sandbox_and_debug(
        self, isolated_env: Path, mocker: MockerFixture
    ) -> None:
        mocker.patch.dict(
            os.environ,
            {
                "BANKLINK_ENVIRONMENT": "production",
                "BANKLINK_DEBUG": "true",
                "PLAID_CLIENT_ID": "client",
                "PLAID_SECRET": "secret",
            },
        )
        settings = BankLinkSettings(profile="dev")
        with pytest.raises(ValueError, match="sandbox") as excinfo:
            settings.validate_required_credentials()
        assert "debug" in str(excinfo.value)


class TestSectionValidation:
    def test_database_extension(self) -> None:
        with pytest.raises(SchemaValidationError):
            DatabaseConfig(path=Path("data/banklink.sqlite"))
        assert str(DatabaseConfig(path=Path(":memory:")).path) == ":memory:"

    def test_scraper_url_scheme(self) -> None:
        with pytest.raises(SchemaValidationError):
            ScraperConfig(service_url="localhost:3002")

    def test_scraper_retry_bounds(self) -> None:
        with pytest.raises(SchemaValidationError):
            ScraperConfig(max_retries=-1)
