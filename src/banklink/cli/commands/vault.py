"""Credential vault commands for BankLink CLI."""

import logging

import typer

from ...config import get_current_profile, get_settings
from ...errors import EncryptionError
from ...store import CONNECTIONS, DuckDBDocumentStore, user_collection
from ...vault import CredentialVault

app = typer.Typer(help="Manage the credential encryption key")
logger = logging.getLogger(__name__)


@app.command("generate-key")
def generate_key() -> None:
    """Print a new random 256-bit key for BANKLINK_VAULT__ENCRYPTION_KEY."""
    typer.echo(CredentialVault.generate_key())


@app.command("check")
def check(
    user_id: str | None = typer.Option(
        None, "--user", "-u", help="Also scan this user's stored secrets"
    ),
    migrate: bool = typer.Option(
        False, "--migrate", help="Re-encrypt legacy secrets into the current format"
    ),
) -> None:
    """Verify the configured key and report secrets that need migration."""
    profile = get_current_profile()
    try:
        settings = get_settings(profile)
        vault = CredentialVault.from_config(settings.vault)
        sample = "banklink-vault-check"
        if vault.decrypt(vault.encrypt(sample)) != sample:
            raise EncryptionError("Round trip returned different plaintext")
    except (ValueError, EncryptionError) as e:
        logger.error(f"❌ Vault check failed: {e}")
        raise typer.Exit(1) from e
    logger.info("✅ Vault key is valid")

    if not user_id:
        return

    with DuckDBDocumentStore.from_settings(settings) as store:
        collection = user_collection(user_id, CONNECTIONS)
        pending = [
            d for d in store.list_documents(collection)
            if vault.needs_migration(d.data.get("encryptedSecret"))
        ]
        logger.info(f"🔐 {len(pending)} connection secret(s) need migration")

        if not migrate:
            return
        failed = 0
        for doc in pending:
            try:
                upgraded = vault.migrate(doc.data.get("encryptedSecret"))
            except EncryptionError:
                logger.error(f"❌ Cannot read secret for connection {doc.id}")
                failed += 1
                continue
            store.set(collection, doc.id, {"encryptedSecret": upgraded}, merge=True)
        logger.info(f"✅ Migrated {len(pending) - failed} secret(s)")
        if failed:
            raise typer.Exit(1)
