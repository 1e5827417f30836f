"""Financial summary and snapshot commands for BankLink CLI."""

import json
import logging

import typer

from ..service import open_service
from .connections import USER_OPTION

app = typer.Typer(help="Cached financial summary and daily snapshots")
logger = logging.getLogger(__name__)


@app.command("show")
def show(user_id: str = USER_OPTION) -> None:
    """Print the current financial summary as JSON."""
    with open_service() as service:
        summary = service.get_overview(user_id)

    if summary.is_stale:
        logger.warning("⚠️  Showing last known summary; recomputation failed")
    typer.echo(json.dumps(summary.to_document(), indent=2))


@app.command("snapshot")
def snapshot(
    user_id: str = USER_OPTION,
    prune: bool = typer.Option(
        False, "--prune", help="Also delete snapshots past the retention window"
    ),
) -> None:
    """Save today's snapshot (run daily, e.g. from cron)."""
    with open_service() as service:
        saved = service.save_snapshot(user_id)
        pruned = service.summary.prune_snapshots(user_id) if prune else 0

    logger.info(f"📸 Saved snapshot for {saved.date} (net worth {saved.net_worth:,.2f})")
    if prune:
        logger.info(f"🧹 Pruned {pruned} old snapshots")


@app.command("history")
def history(
    user_id: str = USER_OPTION,
    period: str = typer.Option(
        "30d", "--period", help="One of 7d, 30d, 90d, 1y, all"
    ),
) -> None:
    """Print net worth history, one snapshot per line."""
    with open_service() as service:
        snapshots = service.get_history(user_id, period)

    if not snapshots:
        logger.info(f"No snapshots in the last {period}")
        return
    for snap in snapshots:
        typer.echo(f"{snap.date.isoformat()}\t{snap.net_worth:.2f}")
