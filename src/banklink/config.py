"""Profile-aware settings for BankLink.

Each section (database, Plaid, scraper, vault, cache) is a frozen pydantic model.
``BankLinkSettings`` reads them from ``BANKLINK_<SECTION>__<FIELD>`` variables,
the profile's ``.env.{profile}`` file and a handful of legacy flat variables.
Components never read settings on their own: ``BankLinkService.from_settings``
passes each one its section.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging.config import LoggingConfig

_PROFILE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class DatabaseConfig(BaseModel):
    """Document store configuration settings."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(
        default=Path("data/duckdb/banklink.duckdb"),
        description="Path to the DuckDB file backing the document store",
    )
    create_dirs: bool = Field(
        default=True, description="Automatically create database directories"
    )

    @field_validator("path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Ensure database path has correct extension."""
        if str(v) != ":memory:" and not str(v).endswith((".db", ".duckdb")):
            raise ValueError("Database path must end with .db or .duckdb")
        return v


class PlaidConfig(BaseModel):
    """Plaid API configuration settings."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., description="Plaid client ID")
    secret: str = Field(..., description="Plaid secret key")
    environment: Literal["sandbox", "development", "production"] = Field(
        default="sandbox", description="Plaid environment"
    )
    client_name: str = Field(
        default="BankLink", description="Client name shown inside Plaid Link"
    )
    products: tuple[str, ...] = Field(
        default=("transactions",), description="Plaid products requested at link"
    )
    country_codes: tuple[str, ...] = Field(
        default=("US", "CA", "GB", "FR"), description="Plaid Link country codes"
    )
    language: str = Field(default="en", description="Plaid Link language")
    days_lookback: int = Field(
        default=365,
        ge=1,
        le=730,
        description="Default days to look back for transactions",
    )
    batch_size: int = Field(
        default=500, ge=1, le=500, description="Batch size for API requests"
    )


class ScraperConfig(BaseModel):
    """Regional scraping microservice configuration."""

    model_config = ConfigDict(frozen=True)

    service_url: str = Field(
        default="http://localhost:3002", description="Base URL of the scraper"
    )
    attempt_timeout: float = Field(
        default=120.0,
        gt=0,
        le=900,
        description="Per-attempt connect/read timeout (s)",
    )
    max_retries: int = Field(
        default=3, ge=0, le=10, description="Retries after the first attempt"
    )
    base_delay: float = Field(
        default=1.0, ge=0, le=60, description="Backoff base delay in seconds"
    )
    max_delay: float = Field(
        default=30.0, ge=0, le=600, description="Backoff ceiling in seconds"
    )
    jitter: float = Field(
        default=1.0, ge=0, le=10, description="Upper bound of random jitter (s)"
    )
    show_browser: bool = Field(
        default=True, description="Ask the scraper for a visible browser (2FA)"
    )

    @field_validator("service_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the service URL so paths can be appended."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Scraper service URL must start with http:// or https://")
        return v.rstrip("/")


class VaultConfig(BaseModel):
    """Credential vault configuration."""

    model_config = ConfigDict(frozen=True)

    encryption_key: str = Field(
        default="", description="Hex key (64 chars) or passphrase (>= 32 chars)"
    )
    kdf_salt: str = Field(
        default="banklink-credential-vault",
        description="Salt used when deriving a key from a passphrase",
    )
    kdf_iterations: int = Field(
        default=100_000, ge=10_000, description="PBKDF2 iterations"
    )


class CacheConfig(BaseModel):
    """Summary cache and snapshot configuration."""

    model_config = ConfigDict(frozen=True)

    summary_ttl_seconds: int = Field(
        default=300, ge=0, description="Freshness window of cached summaries"
    )
    income_window_days: int = Field(
        default=30, ge=1, le=366, description="Days counted as monthly cash flow"
    )
    snapshot_retention_days: int = Field(
        default=365, ge=1, description="Snapshots older than this are pruned"
    )


_PLAID_ENVIRONMENTS = ("sandbox", "development", "production")


def _legacy_sections() -> dict[str, BaseModel]:
    """Sections built from flat variables used before the BANKLINK_ prefix.

    PLAID_CLIENT_ID/PLAID_SECRET/PLAID_ENV, ISRAEL_SCRAPER_URL and
    ENCRYPTION_KEY are still honored so existing deployments keep working.
    """
    sections: dict[str, BaseModel] = {}

    client_id = os.getenv("PLAID_CLIENT_ID")
    secret = os.getenv("PLAID_SECRET")
    if client_id and secret:
        env = os.getenv("PLAID_ENV", "sandbox")
        sections["plaid"] = PlaidConfig(
            client_id=client_id,
            secret=secret,
            environment=env if env in _PLAID_ENVIRONMENTS else "sandbox",
        )

    if scraper_url := os.getenv("ISRAEL_SCRAPER_URL"):
        sections["scraper"] = ScraperConfig(service_url=scraper_url)

    if legacy_key := os.getenv("ENCRYPTION_KEY"):
        sections["vault"] = VaultConfig(encryption_key=legacy_key)

    return sections


class BankLinkSettings(BaseSettings):
    """Main application settings with environment variable integration.

    Environment variables are loaded with the BANKLINK_ prefix.
    For nested configs, use double underscores: BANKLINK_SCRAPER__MAX_RETRIES

    Profile Support:
    - Loads from .env.{profile} files (e.g., .env.dev, .env.prod)
    - Falls back to .env for backward compatibility
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    plaid: PlaidConfig = Field(
        default_factory=lambda: PlaidConfig(
            client_id="", secret="", environment="sandbox"
        )
    )
    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    debug: bool = Field(default=False, description="Enable debug mode")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Application environment"
    )
    profile: str = Field(default="default", description="Configuration profile")

    @field_validator("profile")
    @classmethod
    def validate_profile_name(cls, v: str) -> str:
        """Profile names become part of a filename (.env.{profile})."""
        _check_profile(v)
        return v

    def __init__(self, **kwargs: Any):
        """Build settings, folding in pre-BANKLINK_ environment variables.

        A section passed explicitly wins over its legacy variables.
        """
        for section, values in _legacy_sections().items():
            kwargs.setdefault(section, values)
        super().__init__(**kwargs)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Load the profile-specific .env file between env vars and secrets."""
        init_dict = init_settings.init_kwargs if init_settings else {}
        profile = init_dict.get("profile", "dev")  # type: ignore[reportUnknownMemberType]

        profile_env_file = Path(f".env.{profile}")
        env_file = str(profile_env_file) if profile_env_file.exists() else ".env"

        from pydantic_settings import DotEnvSettingsSource

        custom_dotenv = DotEnvSettingsSource(
            settings_cls,
            env_file=env_file,
            env_file_encoding="utf-8",
        )

        return (
            init_settings,
            env_settings,
            custom_dotenv,
            file_secret_settings,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BANKLINK_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    def create_directories(self) -> None:
        """Create the log directory and, for file databases, the data directory."""
        directories = [LoggingConfig.from_environment().log_file_path.parent]
        if str(self.database.path) != ":memory:":
            directories.append(self.database.path.parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def validate_required_credentials(self) -> None:
        """Fail fast on configuration that would only break at request time."""
        errors: list[str] = []

        if not self.vault.encryption_key:
            errors.append("ENCRYPTION_KEY (or BANKLINK_VAULT__ENCRYPTION_KEY) is required")
        if self.environment == "production":
            if not self.plaid.client_id:
                errors.append("PLAID_CLIENT_ID is required")
            if not self.plaid.secret:
                errors.append("PLAID_SECRET is required")
            if self.plaid.environment == "sandbox":
                errors.append("PLAID_ENV must not be sandbox in production")
            if self.debug:
                errors.append("debug must be disabled in production")

        if errors:
            raise ValueError(f"Missing required configuration: {', '.join(errors)}")


_settings_cache: dict[str, BankLinkSettings] = {}
_current_profile: str = "default"


def _check_profile(profile: str) -> None:
    if not profile:
        raise ValueError("Profile name cannot be empty")
    if not _PROFILE_PATTERN.match(profile):
        raise ValueError(
            f"Invalid profile: {profile}. "
            "Profile name must contain only alphanumeric characters, dashes, and underscores"
        )


def get_settings(profile: str | None = None) -> BankLinkSettings:
    """Return the cached settings for ``profile`` (default: the current one).

    The first load validates credentials and creates directories.

    Raises:
        ValueError: If required configuration is missing or invalid.
    """
    profile = profile or _current_profile
    cached = _settings_cache.get(profile)
    if cached is not None:
        return cached

    try:
        settings = BankLinkSettings(profile=profile)
        settings.validate_required_credentials()
        if settings.database.create_dirs:
            settings.create_directories()
    except (ValueError, OSError) as e:
        raise ValueError(f"Configuration error for profile '{profile}': {e}") from e

    _settings_cache[profile] = settings
    return settings


def set_current_profile(profile: str) -> None:
    """Select the profile used by ``get_settings()`` when none is given."""
    global _current_profile

    _check_profile(profile)
    _current_profile = profile


def get_current_profile() -> str:
    return _current_profile


def reload_settings(profile: str | None = None) -> BankLinkSettings:
    """Drop the cached settings for ``profile`` and load them again."""
    profile = profile or _current_profile
    _settings_cache.pop(profile, None)
    return get_settings(profile)


def clear_settings_cache() -> None:
    """Drop every cached settings instance (used by tests)."""
    _settings_cache.clear()
