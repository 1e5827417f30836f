"""Service construction shared by CLI commands."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import typer

from ..api import BankLinkService
from ..config import get_current_profile, get_settings
from ..errors import BankLinkError

logger = logging.getLogger(__name__)


@contextmanager
def open_service() -> Iterator[BankLinkService]:
    """Build the service for the active profile and close it afterwards.

    Configuration and BankLink errors are reported with their safe message and
    turned into exit code 1.
    """
    profile = get_current_profile()
    try:
        service = BankLinkService.from_settings(get_settings(profile))
    except (ValueError, BankLinkError) as e:
        logger.error(f"❌ Could not initialize BankLink (profile: {profile}): {e}")
        raise typer.Exit(1) from e

    try:
        yield service
    except BankLinkError as e:
        logger.error(f"❌ {e.user_message}")
        logger.debug(f"{type(e).__name__}: {e}")
        raise typer.Exit(1) from e
    finally:
        service.close()
