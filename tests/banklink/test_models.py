# ruff: noqa: S101,S106
"""Tests for canonical models and their document serialization."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaValidationError

from banklink.models import (
    AccountClass,
    Balance,
    CachedSummary,
    CanonicalAccount,
    CanonicalTransaction,
    Connection,
    ConnectionStatus,
    DailySnapshot,
    FinancialMetrics,
    ProviderId,
)


@pytest.mark.unit
def test_transaction_document_uses_camel_case() -> None:
    tx = CanonicalTransaction(
        id="t1",
        account_id="a1",
        amount=Decimal("-12.50"),
        posted_date=date(2026, 3, 1),
        description="Coffee",
        currency_code="usd",
    )

    doc = tx.to_document(connectionId="c1")

    assert doc["accountId"] == "a1"
    assert doc["postedDate"] == "2026-03-01"
    assert doc["currencyCode"] == "USD"
    assert doc["connectionId"] == "c1"
    assert Decimal(doc["amount"]) == Decimal("-12.50")


@pytest.mark.unit
def test_transaction_round_trips_from_document() -> None:
    doc = {
        "id": "t1",
        "accountId": "a1",
        "amount": "42",
        "postedDate": "2026-03-01",
        "description": "Salary",
        "currencyCode": "ILS",
        "connectionId": "ignored-extra",
    }

    tx = CanonicalTransaction.from_document(doc)

    assert tx.amount == Decimal("42")
    assert tx.posted_date == date(2026, 3, 1)
    assert tx.pending is False


@pytest.mark.unit
def test_account_rejects_long_mask() -> None:
    with pytest.raises(SchemaValidationError):
        CanonicalAccount(
            id="a1",
            provider_id=ProviderId.PLAID,
            institution_id="ins_1",
            institution_name="Bank",
            display_name="Checking",
            masked_number="123456",
            currency_code="USD",
            balance=Balance(current=Decimal(1)),
        )


@pytest.mark.unit
def test_account_defaults_to_other_class() -> None:
    account = CanonicalAccount(
        id="a1",
        provider_id=ProviderId.ISRAEL,
        institution_id="leumi",
        institution_name="Bank Leumi",
        display_name="Account 1",
        currency_code="ILS",
        balance=Balance(current=Decimal(0)),
    )
    assert account.account_class is AccountClass.OTHER
    assert account.balance.available is None


@pytest.mark.unit
def test_connection_repr_hides_secret() -> None:
    connection = Connection(
        id="c1",
        user_id="u1",
        provider_id=ProviderId.PLAID,
        external_item_id="item-1",
        institution_name="Chase",
        encrypted_secret="access-sandbox-very-secret",
    )

    assert "very-secret" not in repr(connection)
    assert connection.status is ConnectionStatus.ACTIVE
    assert connection.to_document()["encryptedSecret"] == "access-sandbox-very-secret"


@pytest.mark.unit
def test_cached_summary_version_defaults_to_zero() -> None:
    summary = CachedSummary.from_document(
        {"metrics": {"netWorth": 10.0}, "computedAt": "2026-03-01T00:00:00+00:00"}
    )
    assert summary.version == 0
    assert summary.metrics.net_worth == 10.0
    assert summary.is_stale is False


@pytest.mark.unit
def test_daily_snapshot_exposes_metrics() -> None:
    snapshot = DailySnapshot(
        user_id="u1",
        date=date(2026, 3, 1),
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
        net_worth=100.0,
        total_assets=150.0,
        total_liabilities=50.0,
    )

    assert snapshot.metrics == FinancialMetrics(
        net_worth=100.0, total_assets=150.0, total_liabilities=50.0
    )
    assert snapshot.to_document()["date"] == "2026-03-01"
