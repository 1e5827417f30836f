"""Main CLI application for BankLink.

This module provides the unified entry point for BankLink CLI operations:
linking institutions, refreshing and removing them, inspecting the cached
financial summary and managing the credential vault.
"""

import logging
from typing import Annotated

import typer

from ..config import set_current_profile
from ..logging import setup_logging
from .commands import connections, summary, vault

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="banklink",
    help="BankLink: link bank accounts and keep a cached financial overview",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    profile: Annotated[
        str,
        typer.Option(
            "--profile",
            "-p",
            help="Configuration profile to use. Default: default",
            envvar="BANKLINK_PROFILE",
        ),
    ] = "default",
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose debug logging",
        ),
    ] = False,
) -> None:
    """Global options for BankLink CLI.

    Each profile loads from its own .env.{profile} file, so separate
    environments (sandbox, production) keep separate keys and databases.

    Examples:
      banklink --profile=dev connect scraper -u alice -c hapoalim -f userCode=AB1
      banklink --profile=prod summary show -u alice
    """
    setup_logging(cli_mode=True, verbose=verbose)

    try:
        set_current_profile(profile)
    except ValueError as e:
        logger.error(f"Invalid profile: {profile}")
        raise typer.BadParameter(str(e)) from e

    logger.debug(f"Using profile: {profile}")


app.add_typer(connections.app, name="connect", help="Link new institutions")
app.command("connections")(connections.list_connections)
app.command("disconnect")(connections.disconnect)
app.command("sync")(connections.sync)
app.add_typer(summary.app, name="summary", help="Financial summary and snapshots")
app.add_typer(vault.app, name="vault", help="Credential vault management")


def main() -> None:
    """Entry point for the BankLink CLI application."""
    app()


if __name__ == "__main__":
    main()
