"""Connection lifecycle: link, sync and remove external institutions.

The manager dispatches once on ``ProviderId`` and never re-checks the provider
downstream. Within one ``connect`` the writes are ordered:

    connection record -> accounts -> transactions -> summary invalidation

so a later read never sees accounts without their owning connection, and a
partially failed connect can be recovered by a sync.
"""

import logging
import re
import secrets
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaValidationError
from pydantic.alias_generators import to_camel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .deadline import Deadline
from .errors import (
    ConnectInProgressError,
    EncryptionError,
    NotFoundError,
    PersistenceError,
    StoreError,
    TerminalCredentialError,
    ValidationError,
)
from .models import (
    CanonicalAccount,
    CanonicalTransaction,
    Connection,
    ConnectionResult,
    ConnectionStatus,
    DisconnectResult,
    ProviderId,
    SyncResult,
    utc_now,
)
from .providers.base import BestEffortResult
from .providers.plaid import PlaidAdapter
from .providers.scraper import ScraperAdapter, bank_display_name
from .providers.scraper_schemas import ScraperCredentials
from .store import (
    ACCOUNTS,
    CATEGORIZED_TRANSACTIONS,
    CONNECTIONS,
    TRANSACTIONS,
    DocumentStore,
    chunked,
    user_collection,
)
from .summary import SummaryService
from .vault import CredentialVault

logger = logging.getLogger(__name__)

MAX_DOC_ID_LENGTH = 100
DEFAULT_PLAID_INSTITUTION = "Plaid Bank"
_ILLEGAL_DOC_ID_CHARS = re.compile(r"[/\\.]")

P = TypeVar("P", bound=BaseModel)


def sanitize_doc_id(raw: Any) -> str:
    """Make an external identifier safe to use as a document id.

    Illegal characters are replaced rather than rejected. Empty or non-string
    ids get a synthetic ``doc_<millis>_<random>`` id.
    """
    if not isinstance(raw, str) or not raw:
        return f"doc_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"
    return _ILLEGAL_DOC_ID_CHARS.sub("_", raw)[:MAX_DOC_ID_LENGTH]


class ConnectPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
    )


class PlaidConnectPayload(ConnectPayload):
    """Result of a completed Link flow."""

    public_token: str = Field(..., min_length=1, repr=False)
    institution_id: str | None = None
    institution_name: str | None = None


class ScraperConnectPayload(ConnectPayload):
    """Bank login collected from the user for the scraper."""

    company_id: str = Field(..., min_length=1)
    credentials: dict[str, str] = Field(..., min_length=1, repr=False)

    def to_credentials(self) -> ScraperCredentials:
        return ScraperCredentials(company_id=self.company_id, credentials=self.credentials)


def _parse_payload(model: type[P], payload: Any) -> P:
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{model.__name__} must be a mapping")
    try:
        return model.model_validate(dict(payload))
    except SchemaValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(f"Invalid {model.__name__}: {fields}") from e


class ConnectionManager:
    """Orchestrates connect, disconnect and sync across both providers."""

    def __init__(
        self,
        store: DocumentStore,
        vault: CredentialVault,
        *,
        plaid: PlaidAdapter | None = None,
        scraper: ScraperAdapter | None = None,
        summary: SummaryService | None = None,
    ):
        self.store = store
        self.vault = vault
        self.plaid = plaid
        self.scraper = scraper
        self.summary = summary
        self._in_flight: set[tuple[str, str, str]] = set()
        self._in_flight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _plaid(self) -> PlaidAdapter:
        if self.plaid is None:
            raise ValidationError("Plaid provider is not configured")
        return self.plaid

    def _scraper(self) -> ScraperAdapter:
        if self.scraper is None:
            raise ValidationError("Scraper provider is not configured")
        return self.scraper

    @contextmanager
    def _guard(self, user_id: str, provider_id: ProviderId, key: str) -> Iterator[None]:
        """Reject a second in-flight connect for the same pending connection."""
        token = (user_id, provider_id.value, key)
        with self._in_flight_lock:
            if token in self._in_flight:
                raise ConnectInProgressError(
                    f"Connect already in progress for {provider_id.value}:{key}"
                )
            self._in_flight.add(token)
        try:
            yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(token)

    def _invalidate(self, user_id: str) -> BestEffortResult:
        if self.summary is None:
            return BestEffortResult.success()
        try:
            self.summary.invalidate(user_id)
        except StoreError as e:
            logger.warning(f"Summary invalidation failed for user {user_id}: {e}")
            return BestEffortResult.failure(e)
        return BestEffortResult.success()

    def _write_connection(self, connection: Connection) -> None:
        try:
            self.store.set(
                user_collection(connection.user_id, CONNECTIONS),
                connection.id,
                connection.to_document(),
            )
        except StoreError as e:
            logger.exception(
                f"Failed to persist connection {connection.id} for user "
                f"{connection.user_id} (item {connection.external_item_id}) "
                "after a successful upstream handshake"
            )
            raise PersistenceError(
                f"Connection write failed: {e}",
                user_id=connection.user_id,
                step="connection",
                connection_id=connection.id,
            ) from e

    def _write_records(
        self,
        user_id: str,
        connection_id: str,
        name: str,
        records: list[CanonicalAccount] | list[CanonicalTransaction],
    ) -> None:
        collection = user_collection(user_id, name)
        updated_at = utc_now().isoformat()
        try:
            for chunk in chunked(records):
                batch = self.store.batch()
                for record in chunk:
                    doc_id = sanitize_doc_id(f"{connection_id}_{record.id}")
                    batch.set(
                        collection,
                        doc_id,
                        record.to_document(
                            connectionId=connection_id, userId=user_id, updatedAt=updated_at
                        ),
                    )
                batch.commit()
        except StoreError as e:
            logger.exception(
                f"Failed to persist {name} for connection {connection_id} (user {user_id}); "
                "connection record is saved, a sync can recover"
            )
            raise PersistenceError(
                f"Bulk write of {name} failed: {e}",
                user_id=user_id,
                step=name,
                connection_id=connection_id,
            ) from e
        logger.info(f"Saved {len(records)} {name} for connection {connection_id}")

    def get_connection(self, user_id: str, connection_id: str) -> Connection:
        doc = self.store.get(user_collection(user_id, CONNECTIONS), connection_id)
        if doc is None:
            raise NotFoundError(f"Connection {connection_id} not found for user {user_id}")
        return Connection.from_document(doc)

    def list_connections(self, user_id: str) -> list[Connection]:
        docs = self.store.list_documents(user_collection(user_id, CONNECTIONS))
        return sorted(
            (Connection.from_document(d.data) for d in docs), key=lambda c: c.created_at
        )

    def _reveal(self, connection: Connection) -> str:
        """Decrypt the stored secret, re-encrypting legacy values on the way."""
        revealed = self.vault.reveal(connection.encrypted_secret)
        if revealed.needs_migration:
            try:
                self.store.set(
                    user_collection(connection.user_id, CONNECTIONS),
                    connection.id,
                    {"encryptedSecret": self.vault.encrypt(revealed.secret)},
                    merge=True,
                )
                logger.info(f"Re-encrypted legacy secret for connection {connection.id}")
            except StoreError as e:
                logger.warning(f"Could not migrate secret for connection {connection.id}: {e}")
        return revealed.secret

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def connect(
        self,
        user_id: str,
        provider_id: ProviderId | str,
        payload: Mapping[str, Any] | ConnectPayload,
        deadline: Deadline | None = None,
    ) -> ConnectionResult:
        """Link a new institution for ``user_id``.

        Raises:
            ValidationError: Unknown provider or malformed payload
            ConnectInProgressError: Same connection already being linked
            TerminalCredentialError, RetryExhausted, UpstreamUnavailable,
            UnknownUpstreamError: Classified upstream failures
            PersistenceError: A store write failed after the handshake
        """
        if not user_id:
            raise ValidationError("user_id is required")
        try:
            provider = ProviderId(provider_id)
        except ValueError as e:
            raise ValidationError(f"Unknown provider: {provider_id!r}") from e

        deadline = deadline or Deadline.none()
        if provider is ProviderId.PLAID:
            plaid_payload = _parse_payload(PlaidConnectPayload, payload)
            key = plaid_payload.institution_id or plaid_payload.public_token
            with self._guard(user_id, provider, key):
                return self._connect_plaid(user_id, plaid_payload, deadline)

        scraper_payload = _parse_payload(ScraperConnectPayload, payload)
        with self._guard(user_id, provider, scraper_payload.company_id):
            return self._connect_scraper(user_id, scraper_payload, deadline)

    def _connect_plaid(
        self, user_id: str, payload: PlaidConnectPayload, deadline: Deadline
    ) -> ConnectionResult:
        exchange = self._plaid().exchange_public_token(payload.public_token, deadline)

        connection = Connection(
            id=self.store.new_id(user_collection(user_id, CONNECTIONS)),
            user_id=user_id,
            provider_id=ProviderId.PLAID,
            external_item_id=exchange.external_item_id,
            institution_name=(
                payload.institution_name
                or payload.institution_id
                or DEFAULT_PLAID_INSTITUTION
            ),
            encrypted_secret=self.vault.encrypt(exchange.external_secret),
            last_synced_at=utc_now(),
        )
        self._write_connection(connection)
        self._invalidate(user_id)

        logger.info(f"Connected Plaid item {exchange.external_item_id} as {connection.id}")
        return ConnectionResult(connection_id=connection.id, provider_id=ProviderId.PLAID)

    def _connect_scraper(
        self, user_id: str, payload: ScraperConnectPayload, deadline: Deadline
    ) -> ConnectionResult:
        credentials = payload.to_credentials()
        result = self._scraper().scrape_all(credentials, deadline)

        connection = Connection(
            id=self.store.new_id(user_collection(user_id, CONNECTIONS)),
            user_id=user_id,
            provider_id=ProviderId.ISRAEL,
            external_item_id=payload.company_id,
            institution_name=bank_display_name(payload.company_id),
            encrypted_secret=self.vault.encrypt(credentials.to_secret()),
            last_synced_at=utc_now(),
        )
        self._write_connection(connection)
        self._write_records(user_id, connection.id, ACCOUNTS, result.accounts)
        self._write_records(user_id, connection.id, TRANSACTIONS, result.transactions)
        self._invalidate(user_id)

        logger.info(
            f"Connected {payload.company_id} as {connection.id}: "
            f"{len(result.accounts)} accounts, {len(result.transactions)} transactions"
        )
        return ConnectionResult(
            connection_id=connection.id,
            provider_id=ProviderId.ISRAEL,
            accounts_count=len(result.accounts),
            transactions_count=len(result.transactions),
        )

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(StoreError),
        reraise=True,
    )
    def _delete_chunk(self, collection: str, doc_ids: list[str]) -> None:
        batch = self.store.batch()
        for doc_id in doc_ids:
            batch.delete(collection, doc_id)
        batch.commit()

    def _delete_by_connection(self, user_id: str, name: str, connection_id: str) -> int:
        collection = user_collection(user_id, name)
        try:
            doc_ids = [d.id for d in self.store.query(collection, "connectionId", connection_id)]
            for chunk in chunked(doc_ids):
                self._delete_chunk(collection, chunk)
        except StoreError as e:
            logger.exception(f"Failed to delete {name} for connection {connection_id}")
            raise PersistenceError(
                f"Delete of {name} failed: {e}",
                user_id=user_id,
                step=f"delete_{name}",
                connection_id=connection_id,
            ) from e
        logger.info(f"Deleted {len(doc_ids)} {name} for connection {connection_id}")
        return len(doc_ids)

    def _revoke_upstream(self, connection: Connection, deadline: Deadline) -> BestEffortResult:
        """Best-effort upstream revocation. Never raises; local cleanup follows."""
        if connection.provider_id is not ProviderId.PLAID:
            # Scraper sessions hold nothing upstream
            return BestEffortResult.success()
        if self.plaid is None:
            logger.warning(
                f"Plaid is not configured; skipping upstream revocation for {connection.id}"
            )
            return BestEffortResult.failure("plaid not configured")
        try:
            secret = self.vault.reveal(connection.encrypted_secret).secret
        except EncryptionError as e:
            logger.warning(
                f"Cannot read secret for connection {connection.id}; skipping upstream revocation"
            )
            return BestEffortResult.failure(e)
        try:
            return self.plaid.remove_item(secret, deadline)
        except Exception as e:
            logger.warning(
                f"Upstream revocation for {connection.id} failed: {type(e).__name__}"
            )
            return BestEffortResult.failure(e)

    def disconnect(
        self, user_id: str, connection_id: str, deadline: Deadline | None = None
    ) -> DisconnectResult:
        """Remove a connection and everything linked to it.

        Upstream revocation is best-effort; local cleanup always proceeds. The
        connection record is deleted last so an interrupted disconnect can be
        repeated.
        """
        deadline = deadline or Deadline.none()
        connection = self.get_connection(user_id, connection_id)

        revocation = self._revoke_upstream(connection, deadline)

        deleted = {
            TRANSACTIONS: self._delete_by_connection(user_id, TRANSACTIONS, connection_id),
            ACCOUNTS: self._delete_by_connection(user_id, ACCOUNTS, connection_id),
            CATEGORIZED_TRANSACTIONS: self._delete_by_connection(
                user_id, CATEGORIZED_TRANSACTIONS, connection_id
            ),
        }
        try:
            self._delete_chunk(user_collection(user_id, CONNECTIONS), [connection_id])
        except StoreError as e:
            logger.exception(f"Failed to delete connection record {connection_id}")
            raise PersistenceError(
                f"Delete of connection failed: {e}",
                user_id=user_id,
                step="delete_connection",
                connection_id=connection_id,
            ) from e
        deleted["connections"] = 1

        self._invalidate(user_id)
        logger.info(
            f"Disconnected {connection_id} for user {user_id} "
            f"(upstream revoked: {revocation.ok})"
        )
        return DisconnectResult(
            connection_id=connection_id, deleted=deleted, upstream_revoked=revocation.ok
        )

    # ------------------------------------------------------------------
    # Sync and link tokens
    # ------------------------------------------------------------------

    def _mark(
        self, connection: Connection, status: ConnectionStatus, error: str | None = None
    ) -> None:
        update: dict[str, Any] = {"status": status.value, "lastError": error}
        if status is ConnectionStatus.ACTIVE:
            update["lastSyncedAt"] = utc_now().isoformat()
        self.store.set(
            user_collection(connection.user_id, CONNECTIONS), connection.id, update, merge=True
        )

    def sync(
        self, user_id: str, connection_id: str, deadline: Deadline | None = None
    ) -> SyncResult:
        """Refresh one connection.

        Scraper connections are re-scraped and upserted. Plaid data is fetched
        on demand and returned without being stored.
        """
        deadline = deadline or Deadline.none()
        connection = self.get_connection(user_id, connection_id)
        try:
            secret = self._reveal(connection)
        except EncryptionError:
            self._mark(connection, ConnectionStatus.ERROR, "ENCRYPTION_ERROR")
            raise

        try:
            if connection.provider_id is ProviderId.PLAID:
                plaid = self._plaid()
                end = utc_now().date()
                start = end - timedelta(days=plaid.config.days_lookback)
                accounts = plaid.fetch_accounts(secret, deadline)
                transactions = plaid.fetch_transactions(secret, start, end, deadline)
                persisted = False
            else:
                credentials = ScraperCredentials.from_secret(secret)
                result = self._scraper().scrape_all(credentials, deadline)
                accounts, transactions = result.accounts, result.transactions
                self._write_records(user_id, connection_id, ACCOUNTS, accounts)
                self._write_records(user_id, connection_id, TRANSACTIONS, transactions)
                persisted = True
        except TerminalCredentialError as e:
            self._mark(connection, ConnectionStatus.ERROR, e.error_type or "CREDENTIALS")
            raise

        synced_at = utc_now()
        self._mark(connection, ConnectionStatus.ACTIVE)
        if persisted:
            self._invalidate(user_id)

        logger.info(
            f"Synced {connection_id}: {len(accounts)} accounts, "
            f"{len(transactions)} transactions"
        )
        return SyncResult(
            connection_id=connection_id,
            provider_id=connection.provider_id,
            synced_at=synced_at,
            accounts=accounts,
            transactions=transactions,
            persisted=persisted,
        )

    def get_link_token(
        self,
        user_id: str,
        mode: str = "create",
        connection_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> str:
        existing: Connection | None = None
        if mode == "update":
            if not connection_id:
                raise ValidationError("Update mode requires a connection id")
            existing = self.get_connection(user_id, connection_id)
            if existing.provider_id is not ProviderId.PLAID:
                raise ValidationError("Link tokens only apply to Plaid connections")
        return self._plaid().create_link_token(user_id, mode, existing, deadline)

