# ruff: noqa: S101,S106
"""Tests for ConnectionManager.

Adapters are mocked; the document store is a real in-memory DuckDB store so
write ordering and cleanup can be checked against stored documents.
"""

from __future__ import annotations

import json
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest

from banklink.config import PlaidConfig
from banklink.connections import ConnectionManager, sanitize_doc_id
from banklink.errors import (
    ConnectInProgressError,
    EncryptionError,
    NotFoundError,
    PersistenceError,
    StoreError,
    TerminalCredentialError,
    ValidationError,
)
from banklink.models import (
    AccountClass,
    Balance,
    CanonicalAccount,
    CanonicalTransaction,
    Connection,
    ConnectionStatus,
    ProviderId,
    ScrapeResult,
)
from banklink.providers.base import BestEffortResult
from banklink.providers.plaid import PlaidAdapter, TokenExchange
from banklink.providers.scraper import ScraperAdapter
from banklink.store import (
    ACCOUNTS,
    CATEGORIZED_TRANSACTIONS,
    CONNECTIONS,
    TRANSACTIONS,
    DuckDBDocumentStore,
    user_collection,
)
from banklink.summary import SummaryService
from banklink.vault import CredentialVault

USER = "u1"
SCRAPER_PAYLOAD = {
    "companyId": "hapoalim",
    "credentials": {"userCode": "AB123", "password": "hunter2"},
}


def _account(account_id: str = "12-345") -> CanonicalAccount:
    return CanonicalAccount(
        id=account_id,
        provider_id=ProviderId.ISRAEL,
        institution_id="hapoalim",
        institution_name="Bank Hapoalim",
        display_name=f"Account {account_id}",
        account_class=AccountClass.DEPOSITORY,
        masked_number=account_id[-4:],
        currency_code="ILS",
        balance=Balance(current=Decimal(500)),
    )


def _transaction(tx_id: str, amount: int = -10) -> CanonicalTransaction:
    return CanonicalTransaction(
        id=tx_id,
        account_id="12-345",
        amount=Decimal(amount),
        posted_date=date(2026, 3, 1),
        description="Supermarket",
        currency_code="ILS",
    )


def _scrape_result(*tx_ids: str) -> ScrapeResult:
    ids = tx_ids or ("t1", "t2")
    return ScrapeResult(
        accounts=[_account()], transactions=[_transaction(i) for i in ids]
    )


def _seed_connection(
    store: DuckDBDocumentStore,
    secret: str,
    provider: ProviderId = ProviderId.PLAID,
    connection_id: str = "c1",
) -> Connection:
    connection = Connection(
        id=connection_id,
        user_id=USER,
        provider_id=provider,
        external_item_id="item-1",
        institution_name="Chase",
        encrypted_secret=secret,
    )
    store.set(user_collection(USER, CONNECTIONS), connection_id, connection.to_document())
    return connection


def _docs(store: DuckDBDocumentStore, name: str) -> list[Any]:
    return store.list_documents(user_collection(USER, name))


@pytest.fixture
def scraper(mocker: Any) -> MagicMock:
    adapter = mocker.MagicMock(spec=ScraperAdapter)
    adapter.scrape_all.return_value = _scrape_result()
    return adapter


@pytest.fixture
def plaid(mocker: Any) -> MagicMock:
    adapter = mocker.MagicMock(spec=PlaidAdapter)
    adapter.config = PlaidConfig(client_id="client", secret="secret")
    adapter.exchange_public_token.return_value = TokenExchange(
        external_secret="access-sandbox-1", external_item_id="item-1"
    )
    adapter.remove_item.return_value = BestEffortResult.success()
    adapter.fetch_accounts.return_value = []
    adapter.fetch_transactions.return_value = []
    return adapter


@pytest.fixture
def summary(mocker: Any) -> MagicMock:
    return mocker.MagicMock(spec=SummaryService)


@pytest.fixture
def manager(
    store: DuckDBDocumentStore,
    vault: CredentialVault,
    plaid: MagicMock,
    scraper: MagicMock,
    summary: MagicMock,
) -> ConnectionManager:
    return ConnectionManager(store, vault, plaid=plaid, scraper=scraper, summary=summary)


@pytest.mark.unit
class TestSanitizeDocId:
    def test_replaces_illegal_characters(self) -> None:
        assert sanitize_doc_id("a/b.c\\d") == "a_b_c_d"

    def test_truncates(self) -> None:
        assert len(sanitize_doc_id("x" * 250)) == 100

    @pytest.mark.parametrize("raw", ["", None, 12345])
    def test_synthetic_id_for_unusable_input(self, raw: Any) -> None:
        doc_id = sanitize_doc_id(raw)
        assert doc_id.startswith("doc_")


@pytest.mark.unit
class TestConnectScraper:
    def test_writes_connection_then_records_then_invalidates(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        summary: MagicMock,
        mocker: Any,
    ) -> None:
        real_batch = store.batch

        def batch_after_connection() -> Any:
            assert _docs(store, CONNECTIONS), "connection must be written before records"
            return real_batch()

        def invalidate_after_records(user_id: str) -> None:
            assert len(_docs(store, ACCOUNTS)) == 1
            assert len(_docs(store, TRANSACTIONS)) == 2

        mocker.patch.object(store, "batch", side_effect=batch_after_connection)
        summary.invalidate.side_effect = invalidate_after_records

        result = manager.connect(USER, "israel", SCRAPER_PAYLOAD)

        assert result.accounts_count == 1
        assert result.transactions_count == 2
        summary.invalidate.assert_called_once_with(USER)

    def test_connection_record(
        self, manager: ConnectionManager, store: DuckDBDocumentStore, vault: CredentialVault
    ) -> None:
        result = manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

        connection = manager.get_connection(USER, result.connection_id)
        assert connection.status is ConnectionStatus.ACTIVE
        assert connection.institution_name == "Bank Hapoalim"
        assert connection.external_item_id == "hapoalim"
        assert "hunter2" not in connection.encrypted_secret
        assert json.loads(vault.decrypt(connection.encrypted_secret)) == {
            "companyId": "hapoalim",
            "creds": {"userCode": "AB123", "password": "hunter2"},
        }

    def test_records_are_tagged_and_scoped(
        self, manager: ConnectionManager, store: DuckDBDocumentStore
    ) -> None:
        result = manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

        for doc in _docs(store, ACCOUNTS) + _docs(store, TRANSACTIONS):
            assert doc.data["connectionId"] == result.connection_id
            assert doc.data["userId"] == USER
            assert doc.id.startswith(f"{result.connection_id}_")

    def test_terminal_error_writes_nothing(
        self, manager: ConnectionManager, store: DuckDBDocumentStore, scraper: MagicMock
    ) -> None:
        scraper.scrape_all.side_effect = TerminalCredentialError(
            "bad login", error_type="INVALID_PASSWORD"
        )

        with pytest.raises(TerminalCredentialError):
            manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

        assert _docs(store, CONNECTIONS) == []

    def test_bulk_write_failure_keeps_connection(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        summary: MagicMock,
        mocker: Any,
    ) -> None:
        failing = mocker.MagicMock()
        failing.commit.side_effect = StoreError("disk full")
        mocker.patch.object(store, "batch", return_value=failing)

        with pytest.raises(PersistenceError) as exc_info:
            manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

        error = exc_info.value
        assert error.step == ACCOUNTS
        assert error.user_id == USER
        assert [d.id for d in _docs(store, CONNECTIONS)] == [error.connection_id]
        summary.invalidate.assert_not_called()

    def test_concurrent_connect_is_rejected(
        self, manager: ConnectionManager, scraper: MagicMock
    ) -> None:
        nested_errors: list[Exception] = []

        def reenter(*args: Any, **kwargs: Any) -> ScrapeResult:
            try:
                manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)
            except ConnectInProgressError as e:
                nested_errors.append(e)
            return _scrape_result()

        scraper.scrape_all.side_effect = reenter
        manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

        assert len(nested_errors) == 1
        scraper.scrape_all.side_effect = None
        manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

    @pytest.mark.parametrize(
        ("provider", "payload"),
        [
            ("mx", SCRAPER_PAYLOAD),
            (ProviderId.ISRAEL, {"companyId": "hapoalim"}),
            (ProviderId.ISRAEL, {"companyId": "hapoalim", "credentials": {}}),
            (ProviderId.ISRAEL, ["not", "a", "mapping"]),
            (ProviderId.PLAID, {"institutionId": "ins_3"}),
        ],
    )
    def test_invalid_requests(
        self, manager: ConnectionManager, provider: Any, payload: Any
    ) -> None:
        with pytest.raises(ValidationError):
            manager.connect(USER, provider, payload)

    def test_unconfigured_provider(
        self, store: DuckDBDocumentStore, vault: CredentialVault
    ) -> None:
        manager = ConnectionManager(store, vault)
        with pytest.raises(ValidationError):
            manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)


@pytest.mark.unit
class TestConnectPlaid:
    def test_stores_only_connection(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
    ) -> None:
        result = manager.connect(
            USER,
            ProviderId.PLAID,
            {"publicToken": "public-sandbox-1", "institutionName": "Chase"},
        )

        connection = manager.get_connection(USER, result.connection_id)
        assert connection.institution_name == "Chase"
        assert connection.external_item_id == "item-1"
        assert vault.decrypt(connection.encrypted_secret) == "access-sandbox-1"
        assert _docs(store, ACCOUNTS) == []
        plaid.fetch_accounts.assert_not_called()

    def test_connection_write_failure(
        self, manager: ConnectionManager, store: DuckDBDocumentStore, mocker: Any
    ) -> None:
        mocker.patch.object(store, "set", side_effect=StoreError("unavailable"))

        with pytest.raises(PersistenceError) as exc_info:
            manager.connect(USER, ProviderId.PLAID, {"publicToken": "public-sandbox-1"})

        assert exc_info.value.step == "connection"
        assert "access-sandbox-1" not in str(exc_info.value)


@pytest.mark.unit
class TestDisconnect:
    def _seed_records(self, store: DuckDBDocumentStore, connection_id: str) -> None:
        for name in (ACCOUNTS, TRANSACTIONS, CATEGORIZED_TRANSACTIONS):
            collection = user_collection(USER, name)
            store.set(collection, f"{connection_id}_1", {"connectionId": connection_id})
            store.set(collection, f"{connection_id}_2", {"connectionId": connection_id})
            store.set(collection, "other_1", {"connectionId": "other"})

    def test_removes_everything_even_if_revocation_fails(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
        summary: MagicMock,
    ) -> None:
        _seed_connection(store, vault.encrypt("access-sandbox-1"))
        self._seed_records(store, "c1")
        plaid.remove_item.return_value = BestEffortResult.failure("UpstreamUnavailable")

        result = manager.disconnect(USER, "c1")

        assert result.upstream_revoked is False
        assert result.deleted == {
            TRANSACTIONS: 2,
            ACCOUNTS: 2,
            CATEGORIZED_TRANSACTIONS: 2,
            "connections": 1,
        }
        plaid.remove_item.assert_called_once()
        assert plaid.remove_item.call_args.args[0] == "access-sandbox-1"
        assert _docs(store, CONNECTIONS) == []
        for name in (ACCOUNTS, TRANSACTIONS, CATEGORIZED_TRANSACTIONS):
            assert [d.id for d in _docs(store, name)] == ["other_1"]
        summary.invalidate.assert_called_once_with(USER)

    def test_unreadable_secret_skips_revocation(
        self, manager: ConnectionManager, store: DuckDBDocumentStore, plaid: MagicMock
    ) -> None:
        corrupt = json.dumps(
            {"version": 1, "algorithm": "AES-256-GCM", "nonce": "AAAA", "ciphertext": "AAAA"}
        )
        _seed_connection(store, corrupt)

        result = manager.disconnect(USER, "c1")

        assert result.upstream_revoked is False
        plaid.remove_item.assert_not_called()
        assert _docs(store, CONNECTIONS) == []

    def test_plaid_connection_removed_when_plaid_unconfigured(
        self,
        store: DuckDBDocumentStore,
        vault: CredentialVault,
        scraper: MagicMock,
        summary: MagicMock,
    ) -> None:
        manager = ConnectionManager(store, vault, plaid=None, scraper=scraper, summary=summary)
        _seed_connection(store, vault.encrypt("access-sandbox-1"))
        self._seed_records(store, "c1")

        result = manager.disconnect(USER, "c1")

        assert result.upstream_revoked is False
        assert result.deleted[ACCOUNTS] == 2
        assert _docs(store, CONNECTIONS) == []
        assert [d.id for d in _docs(store, ACCOUNTS)] == ["other_1"]

    def test_revocation_exception_does_not_abort_cleanup(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
    ) -> None:
        _seed_connection(store, vault.encrypt("access-sandbox-1"))
        plaid.remove_item.side_effect = RuntimeError("boom")

        result = manager.disconnect(USER, "c1")

        assert result.upstream_revoked is False
        assert _docs(store, CONNECTIONS) == []

    def test_scraper_connection_needs_no_revocation(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
    ) -> None:
        _seed_connection(store, vault.encrypt("{}"), provider=ProviderId.ISRAEL)

        result = manager.disconnect(USER, "c1")

        assert result.upstream_revoked is True
        plaid.remove_item.assert_not_called()

    def test_missing_connection(self, manager: ConnectionManager) -> None:
        with pytest.raises(NotFoundError):
            manager.disconnect(USER, "nope")

    def test_transient_delete_failure_is_retried(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        vault: CredentialVault,
        mocker: Any,
    ) -> None:
        mocker.patch("time.sleep")
        _seed_connection(store, vault.encrypt("access-sandbox-1"))
        self._seed_records(store, "c1")
        real_batch = store.batch
        calls = {"count": 0}

        def flaky_batch() -> Any:
            calls["count"] += 1
            if calls["count"] == 1:
                failing = mocker.MagicMock()
                failing.commit.side_effect = StoreError("busy")
                return failing
            return real_batch()

        mocker.patch.object(store, "batch", side_effect=flaky_batch)

        result = manager.disconnect(USER, "c1")

        assert result.deleted[TRANSACTIONS] == 2
        assert _docs(store, CONNECTIONS) == []

    def test_persistent_delete_failure_keeps_connection(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        vault: CredentialVault,
        mocker: Any,
    ) -> None:
        mocker.patch("time.sleep")
        _seed_connection(store, vault.encrypt("access-sandbox-1"))
        self._seed_records(store, "c1")
        failing = mocker.MagicMock()
        failing.commit.side_effect = StoreError("busy")
        mocker.patch.object(store, "batch", return_value=failing)

        with pytest.raises(PersistenceError) as exc_info:
            manager.disconnect(USER, "c1")

        assert exc_info.value.step == f"delete_{TRANSACTIONS}"
        assert failing.commit.call_count == 3
        assert len(_docs(store, CONNECTIONS)) == 1


@pytest.mark.unit
class TestSync:
    def test_scraper_sync_upserts(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        scraper: MagicMock,
        summary: MagicMock,
    ) -> None:
        connection_id = manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD).connection_id
        scraper.scrape_all.return_value = _scrape_result("t1", "t2", "t3")
        summary.reset_mock()

        result = manager.sync(USER, connection_id)

        assert result.persisted is True
        assert len(_docs(store, TRANSACTIONS)) == 3
        assert len(_docs(store, ACCOUNTS)) == 1
        credentials = scraper.scrape_all.call_args.args[0]
        assert credentials.credentials["password"] == "hunter2"
        summary.invalidate.assert_called_once_with(USER)

    def test_terminal_error_marks_connection(
        self, manager: ConnectionManager, scraper: MagicMock
    ) -> None:
        connection_id = manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD).connection_id
        scraper.scrape_all.side_effect = TerminalCredentialError(
            "bad login", error_type="CHANGE_PASSWORD"
        )

        with pytest.raises(TerminalCredentialError):
            manager.sync(USER, connection_id)

        connection = manager.get_connection(USER, connection_id)
        assert connection.status is ConnectionStatus.ERROR
        assert connection.last_error == "CHANGE_PASSWORD"

        scraper.scrape_all.side_effect = None
        manager.sync(USER, connection_id)
        connection = manager.get_connection(USER, connection_id)
        assert connection.status is ConnectionStatus.ACTIVE
        assert connection.last_error is None

    def test_plaid_sync_fetches_without_storing(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
        summary: MagicMock,
    ) -> None:
        _seed_connection(store, vault.encrypt("access-sandbox-1"))
        plaid.fetch_transactions.return_value = [_transaction("t1", 25)]

        result = manager.sync(USER, "c1")

        assert result.persisted is False
        assert result.transactions[0].amount == Decimal(25)
        assert _docs(store, TRANSACTIONS) == []
        secret, start, end = plaid.fetch_transactions.call_args.args[:3]
        assert secret == "access-sandbox-1"
        assert end - start == timedelta(days=365)
        summary.invalidate.assert_not_called()
        assert manager.get_connection(USER, "c1").last_synced_at is not None

    def test_legacy_plaintext_secret_is_migrated(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
    ) -> None:
        _seed_connection(store, "access-legacy-token")

        manager.sync(USER, "c1")

        assert plaid.fetch_accounts.call_args.args[0] == "access-legacy-token"
        stored = manager.get_connection(USER, "c1").encrypted_secret
        assert vault.is_encrypted(stored)
        assert vault.decrypt(stored) == "access-legacy-token"

    def test_corrupt_secret_marks_error(
        self, manager: ConnectionManager, store: DuckDBDocumentStore
    ) -> None:
        corrupt = json.dumps(
            {"version": 1, "algorithm": "AES-256-GCM", "nonce": "AAAA", "ciphertext": "AAAA"}
        )
        _seed_connection(store, corrupt)

        with pytest.raises(EncryptionError):
            manager.sync(USER, "c1")

        assert manager.get_connection(USER, "c1").status is ConnectionStatus.ERROR


@pytest.mark.unit
class TestLinkTokens:
    def test_update_mode_passes_connection(
        self,
        manager: ConnectionManager,
        store: DuckDBDocumentStore,
        plaid: MagicMock,
        vault: CredentialVault,
    ) -> None:
        plaid.create_link_token.return_value = "link-sandbox-1"
        _seed_connection(store, vault.encrypt("access-sandbox-1"))

        assert manager.get_link_token(USER, "update", "c1") == "link-sandbox-1"

        user_id, mode, existing = plaid.create_link_token.call_args.args[:3]
        assert (user_id, mode, existing.id) == (USER, "update", "c1")

    def test_update_mode_requires_plaid_connection(
        self, manager: ConnectionManager, store: DuckDBDocumentStore, vault: CredentialVault
    ) -> None:
        _seed_connection(store, vault.encrypt("{}"), provider=ProviderId.ISRAEL)

        with pytest.raises(ValidationError):
            manager.get_link_token(USER, "update", "c1")
        with pytest.raises(ValidationError):
            manager.get_link_token(USER, "update")


@pytest.mark.unit
def test_list_connections_sorted_by_creation(
    manager: ConnectionManager, store: DuckDBDocumentStore, vault: CredentialVault
) -> None:
    first = manager.connect(USER, ProviderId.PLAID, {"publicToken": "public-1"})
    second = manager.connect(USER, ProviderId.ISRAEL, SCRAPER_PAYLOAD)

    ids = [c.id for c in manager.list_connections(USER)]

    assert ids == [first.connection_id, second.connection_id]
    assert manager.list_connections("someone-else") == []
