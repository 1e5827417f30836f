"""Connection commands for BankLink CLI.

Link institutions through Plaid or the regional scraper, list existing
connections, refresh them and remove them.
"""

import json
import logging

import typer

from ...models import ProviderId
from ..service import open_service

app = typer.Typer(help="Link new institutions")
logger = logging.getLogger(__name__)

USER_OPTION = typer.Option(
    ..., "--user", "-u", help="Verified user id", envvar="BANKLINK_USER_ID"
)


def _parse_fields(fields: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in fields:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {item!r}")
        parsed[key] = value
    return parsed


@app.command("scraper")
def connect_scraper(
    user_id: str = USER_OPTION,
    company_id: str = typer.Option(
        ..., "--company", "-c", help="Scraper company id (e.g. hapoalim, leumi, max)"
    ),
    fields: list[str] = typer.Option(
        [], "--field", "-f", help="Login field as KEY=VALUE (repeatable)"
    ),
    prompt_password: bool = typer.Option(
        True,
        "--prompt-password/--no-prompt-password",
        help="Prompt for the password instead of passing it as a field",
    ),
) -> None:
    """Scrape a bank and store the connection, accounts and transactions.

    Examples:
        banklink connect scraper -u alice -c hapoalim -f userCode=AB123
        banklink connect scraper -u alice -c max -f username=alice --no-prompt-password -f password=...
    """
    credentials = _parse_fields(fields)
    if prompt_password and "password" not in credentials:
        credentials["password"] = typer.prompt("Bank password", hide_input=True)

    logger.info(f"🏦 Scraping {company_id}, this can take a few minutes...")
    with open_service() as service:
        result = service.connect(
            user_id,
            ProviderId.ISRAEL,
            {"companyId": company_id, "credentials": credentials},
        )

    logger.info(
        f"✅ Connected {company_id}: {result.accounts_count} accounts, "
        f"{result.transactions_count} transactions"
    )
    typer.echo(result.connection_id)


@app.command("plaid")
def connect_plaid(
    user_id: str = USER_OPTION,
    public_token: str | None = typer.Option(
        None, "--public-token", help="Public token returned by Plaid Link"
    ),
    institution_id: str | None = typer.Option(None, "--institution-id"),
    institution_name: str | None = typer.Option(None, "--institution-name"),
    sandbox: bool = typer.Option(
        False, "--sandbox", help="Create a sandbox public token instead of using Link"
    ),
) -> None:
    """Exchange a Plaid public token and store the connection."""
    if not public_token and not sandbox:
        raise typer.BadParameter("Provide --public-token or use --sandbox")

    with open_service() as service:
        if sandbox:
            plaid = service.connections.plaid
            if plaid is None:
                logger.error("❌ Plaid credentials are not configured")
                raise typer.Exit(1)
            public_token = plaid.create_sandbox_public_token(
                institution_id or "ins_109508"
            )
        result = service.connect(
            user_id,
            ProviderId.PLAID,
            {
                "publicToken": public_token,
                "institutionId": institution_id,
                "institutionName": institution_name,
            },
        )

    logger.info("✅ Connected Plaid item")
    typer.echo(result.connection_id)


@app.command("link-token")
def link_token(
    user_id: str = USER_OPTION,
    connection_id: str | None = typer.Option(
        None, "--connection", help="Existing connection to repair (update mode)"
    ),
) -> None:
    """Create a Plaid Link token (update mode when --connection is given)."""
    mode = "update" if connection_id else "create"
    with open_service() as service:
        token = service.create_link_token(user_id, mode, connection_id)
    typer.echo(token)


def list_connections(user_id: str = USER_OPTION) -> None:
    """List the user's connections."""
    with open_service() as service:
        connections = service.list_connections(user_id)

    if not connections:
        logger.info("No connections yet")
        return
    for connection in connections:
        synced = connection.last_synced_at.isoformat() if connection.last_synced_at else "never"
        typer.echo(
            f"{connection.id}\t{connection.provider_id.value}\t"
            f"{connection.institution_name}\t{connection.status.value}\t{synced}"
        )


def disconnect(
    connection_id: str = typer.Argument(..., help="Connection id to remove"),
    user_id: str = USER_OPTION,
) -> None:
    """Remove a connection with its accounts, transactions and categorizations."""
    with open_service() as service:
        result = service.disconnect(user_id, connection_id)

    if not result.upstream_revoked:
        logger.warning("⚠️  Upstream revocation failed; local data was removed anyway")
    logger.info(f"✅ Disconnected {connection_id}")
    typer.echo(json.dumps(result.deleted, sort_keys=True))


def sync(
    connection_id: str = typer.Argument(..., help="Connection id to refresh"),
    user_id: str = USER_OPTION,
) -> None:
    """Refresh a connection from its provider."""
    with open_service() as service:
        result = service.sync(user_id, connection_id)

    stored = "stored" if result.persisted else "fetched"
    logger.info(
        f"✅ Sync {stored}: {len(result.accounts)} accounts, "
        f"{len(result.transactions)} transactions"
    )
    typer.echo(result.synced_at.isoformat())
