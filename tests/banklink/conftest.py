"""Shared pytest fixtures for banklink tests.

Provides profile cleanup, an in-memory document store, a vault with a fixed
key and a controllable clock.
"""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest

from banklink.config import ScraperConfig, clear_settings_cache, set_current_profile
from banklink.store import DuckDBDocumentStore
from banklink.vault import CredentialVault

TEST_KEY_HEX = "00112233445566778899aabbccddeeff" * 2


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def clean_profile_state() -> Generator[None, None, None]:
    """Clear the settings cache and reset the profile to 'test' around each test."""
    clear_settings_cache()
    set_current_profile("test")

    yield

    clear_settings_cache()
    set_current_profile("test")


@pytest.fixture
def store() -> Generator[DuckDBDocumentStore, None, None]:
    """Fresh in-memory document store."""
    with DuckDBDocumentStore(":memory:") as s:
        yield s


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(bytes.fromhex(TEST_KEY_HEX))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scraper_config() -> ScraperConfig:
    return ScraperConfig(
        service_url="http://scraper.test",
        attempt_timeout=60,
        max_retries=3,
        base_delay=1.0,
        max_delay=30.0,
        jitter=1.0,
    )
