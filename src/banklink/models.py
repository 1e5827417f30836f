"""Canonical account, transaction and connection schemas.

Every provider adapter maps its native payloads into these models before data
leaves the adapter. The canonical sign convention for transaction amounts is:

    positive amount = money into the account (income, refunds, deposits)
    negative amount = money out of the account (spending, fees, transfers out)

Documents are persisted with camelCase keys (``connectionId``, ``postedDate``)
so records read the same regardless of which provider produced them.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ProviderId(str, Enum):
    """Closed set of upstream providers."""

    PLAID = "plaid"
    ISRAEL = "israel"


class AccountClass(str, Enum):
    """Canonical account classification."""

    DEPOSITORY = "depository"
    CREDIT = "credit"
    INVESTMENT = "investment"
    LOAN = "loan"
    OTHER = "other"


class ConnectionStatus(str, Enum):
    """Lifecycle state of a persisted connection."""

    ACTIVE = "active"
    ERROR = "error"
    REVOKED = "revoked"


def utc_now() -> datetime:
    return datetime.now(UTC)


class CanonicalModel(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
    )

    def to_document(self, **extra: Any) -> dict[str, Any]:
        """Serialize for the document store, merging bookkeeping fields."""
        doc = self.model_dump(mode="json", by_alias=True)
        doc.update(extra)
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Self:
        return cls.model_validate(doc)


class Balance(CanonicalModel):
    """Account balance. ``current`` is always present; others are never invented."""

    current: Decimal
    available: Decimal | None = None
    limit: Decimal | None = None


class CanonicalAccount(CanonicalModel):
    """One financial account as seen by the user."""

    id: str = Field(..., min_length=1, description="Provider-scoped account id")
    provider_id: ProviderId
    institution_id: str
    institution_name: str
    display_name: str
    official_name: str | None = None
    account_class: AccountClass = AccountClass.OTHER
    subtype: str | None = None
    masked_number: str | None = Field(None, max_length=4)
    currency_code: str = Field(..., min_length=3, max_length=3)
    balance: Balance

    @field_validator("currency_code", mode="before")
    @classmethod
    def upper_currency(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class CanonicalTransaction(CanonicalModel):
    """One posted or pending movement, already in the canonical sign convention."""

    id: str = Field(..., min_length=1)
    account_id: str
    amount: Decimal = Field(..., description="Positive = inflow, negative = outflow")
    posted_date: date
    description: str
    merchant_name: str | None = None
    category_hint: list[str] | None = None
    pending: bool = False
    currency_code: str = Field(..., min_length=3, max_length=3)
    original_amount: Decimal | None = None
    original_currency: str | None = None

    @field_validator("currency_code", mode="before")
    @classmethod
    def upper_currency(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class Connection(CanonicalModel):
    """A persisted link between one user and one external institution."""

    model_config = ConfigDict(frozen=False)

    id: str
    user_id: str
    provider_id: ProviderId
    external_item_id: str
    institution_name: str
    encrypted_secret: str = Field(..., repr=False)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    last_error: str | None = None


class FinancialMetrics(CanonicalModel):
    """Aggregate figures shared by cached summaries and daily snapshots."""

    total_assets: float = 0.0
    total_liabilities: float = 0.0
    net_worth: float = 0.0
    liquid_assets: float = 0.0
    investments: float = 0.0
    monthly_income: float = 0.0
    monthly_expenses: float = 0.0
    monthly_cash_flow: float = 0.0


class CachedSummary(CanonicalModel):
    """A computed aggregate plus its freshness bookkeeping."""

    metrics: FinancialMetrics
    computed_at: datetime
    version: int = Field(0, ge=0)
    is_stale: bool = False


class DailySnapshot(FinancialMetrics):
    """Immutable point-in-time copy of the metrics for one calendar day."""

    user_id: str
    date: date
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def metrics(self) -> FinancialMetrics:
        return FinancialMetrics.model_validate(
            self.model_dump(include=set(FinancialMetrics.model_fields))
        )


class ScrapeResult(CanonicalModel):
    """Accounts and transactions produced by a single scrape session."""

    accounts: list[CanonicalAccount] = Field(default_factory=list)
    transactions: list[CanonicalTransaction] = Field(default_factory=list)


class ConnectionResult(CanonicalModel):
    connection_id: str
    provider_id: ProviderId
    accounts_count: int = 0
    transactions_count: int = 0


class DisconnectResult(CanonicalModel):
    connection_id: str
    deleted: dict[str, int]
    upstream_revoked: bool


class SyncResult(CanonicalModel):
    """Outcome of refreshing one connection.

    For on-demand providers the fetched records are returned instead of stored.
    """

    connection_id: str
    provider_id: ProviderId
    synced_at: datetime
    accounts: list[CanonicalAccount] = Field(default_factory=list)
    transactions: list[CanonicalTransaction] = Field(default_factory=list)
    persisted: bool = False
