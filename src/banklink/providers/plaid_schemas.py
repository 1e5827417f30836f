"""Pydantic schemas for Plaid API responses.

The Plaid SDK returns generated model objects; these schemas validate them
(or plain dicts in tests) before anything is mapped into canonical records.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import AccountClass


class PlaidEnvironment(Enum):
    """Plaid API environment options."""

    SANDBOX = "sandbox"
    DEVELOPMENT = "development"
    PRODUCTION = "production"

    @property
    def host(self) -> str:
        return f"https://{self.value}.plaid.com"


def _enum_value(v: Any) -> Any:
    """Plaid SDK enums are ``ModelSimple`` objects carrying ``.value``."""
    if v is None:
        return None
    if isinstance(v, Enum):
        return v.value
    value = getattr(v, "value", v)
    return value if isinstance(value, str) else str(value)


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        extra="ignore",
        use_enum_values=True,
        str_strip_whitespace=True,
        from_attributes=True,
        populate_by_name=True,
    )


class BalanceSchema(BaseSchema):
    """Schema for account balance information."""

    available: Decimal | None = Field(None, description="Available balance")
    current: Decimal | None = Field(None, description="Current balance")
    limit: Decimal | None = Field(None, description="Credit limit or overdraft limit")
    iso_currency_code: str | None = Field(None, max_length=3)
    unofficial_currency_code: str | None = None


class AccountSchema(BaseSchema):
    """Schema for Plaid account data."""

    account_id: str = Field(..., description="Plaid account ID")
    balances: BalanceSchema
    mask: str | None = Field(None, max_length=4)
    name: str = Field(..., description="Account name")
    official_name: str | None = None
    subtype: str | None = None
    type: str

    @field_validator("type", "subtype", mode="before")
    @classmethod
    def coerce_enum(cls, v: Any) -> Any:
        """Accept Plaid SDK enum or string and convert to string."""
        return _enum_value(v)

    @property
    def account_class(self) -> AccountClass:
        if self.type == "brokerage":
            return AccountClass.INVESTMENT
        try:
            return AccountClass(self.type)
        except ValueError:
            return AccountClass.OTHER


class PersonalFinanceCategorySchema(BaseSchema):
    primary: str | None = None
    detailed: str | None = None


class TransactionSchema(BaseSchema):
    """Schema for Plaid transaction data.

    ``amount`` is in Plaid's convention: positive means money left the account.
    """

    transaction_id: str = Field(..., description="Plaid transaction ID")
    account_id: str = Field(..., description="Associated account ID")
    amount: Decimal = Field(..., description="Transaction amount")
    iso_currency_code: str | None = Field(None, max_length=3)
    unofficial_currency_code: str | None = None

    transaction_date: date = Field(..., description="Transaction date", alias="date")
    authorized_date: date | None = None
    transaction_datetime: datetime | None = Field(None, alias="datetime")

    name: str | None = None
    merchant_name: str | None = None
    original_description: str | None = None

    category: list[str] = Field(default_factory=list)
    personal_finance_category: PersonalFinanceCategorySchema | None = None

    payment_channel: str | None = None
    pending: bool = False
    pending_transaction_id: str | None = None

    @field_validator("payment_channel", mode="before")
    @classmethod
    def coerce_payment_channel(cls, v: Any) -> Any:
        return _enum_value(v)

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: Any) -> Any:
        """Ensure category is a list of strings; Plaid may return None."""
        if v is None:
            return []
        if isinstance(v, list):
            items = cast(list[object], v)
            return [str(x) for x in items]
        return [str(v)]

    @property
    def description(self) -> str:
        return self.name or self.original_description or self.merchant_name or "Unknown"

    @property
    def category_hint(self) -> list[str] | None:
        if self.category:
            return self.category
        pfc = self.personal_finance_category
        if pfc is not None and pfc.primary:
            return [c for c in (pfc.primary, pfc.detailed) if c]
        return None


class ItemSchema(BaseSchema):
    item_id: str
    institution_id: str | None = None


class AccountsResponseSchema(BaseSchema):
    """Schema for the accounts endpoint response."""

    accounts: list[AccountSchema]
    item: ItemSchema
    request_id: str | None = None


class TransactionsResponseSchema(BaseSchema):
    """Schema for one page of the transactions endpoint response."""

    transactions: list[TransactionSchema]
    total_transactions: int
    item: ItemSchema | None = None
    request_id: str | None = None


class TokenExchangeResponseSchema(BaseSchema):
    access_token: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)


class PlaidErrorBody(BaseSchema):
    """Error payload Plaid returns in ``ApiException.body``."""

    error_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    display_message: str | None = None
    request_id: str | None = None
