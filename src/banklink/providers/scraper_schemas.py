"""Pydantic schemas for the scraping microservice request/response contract."""

import json
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..errors import ValidationError


class ScraperSchema(BaseModel):
    """Base schema: camelCase on the wire, unknown fields ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class ScraperCredentials(ScraperSchema):
    """Bank login for one scraper company, e.g. ``{"userCode": ..., "password": ...}``."""

    model_config = ConfigDict(frozen=True)

    company_id: str = Field(..., min_length=1)
    credentials: dict[str, str] = Field(..., repr=False)

    @field_validator("credentials")
    @classmethod
    def non_empty(cls, v: dict[str, str]) -> dict[str, str]:
        if not v:
            raise ValueError("credentials must not be empty")
        return v

    def to_secret(self) -> str:
        """Serialize for the vault; matches the stored ``{companyId, creds}`` shape."""
        return json.dumps({"companyId": self.company_id, "creds": self.credentials})

    @classmethod
    def from_secret(cls, secret: str) -> "ScraperCredentials":
        try:
            data = json.loads(secret)
            return cls(company_id=data["companyId"], credentials=data["creds"])
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError("Stored scraper credentials are malformed") from e


class ScrapeRequest(ScraperSchema):
    company_id: str
    credentials: dict[str, str] = Field(..., repr=False)
    show_browser: bool = True


def _optional_str(v: Any) -> Any:
    if v is None or isinstance(v, str):
        return v
    return str(v)


class ScrapedTransaction(ScraperSchema):
    identifier: str | None = None
    date: str | None = None
    processed_date: str | None = None
    original_amount: Decimal | None = None
    original_currency: str | None = None
    charged_amount: Decimal | None = None
    charged_currency: str | None = None
    description: str | None = None
    memo: str | None = None
    status: str | None = None
    type: str | None = None
    category: str | None = None

    @field_validator("identifier", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return _optional_str(v)


class ScrapedAccount(ScraperSchema):
    account_number: str = Field(..., min_length=1)
    balance: Decimal | None = None
    txns: list[ScrapedTransaction] = Field(default_factory=list)

    @field_validator("account_number", mode="before")
    @classmethod
    def coerce_account_number(cls, v: Any) -> Any:
        return _optional_str(v)

    @field_validator("txns", mode="before")
    @classmethod
    def coerce_txns(cls, v: Any) -> Any:
        return [] if v is None else v


class ScrapeResponse(ScraperSchema):
    success: bool
    accounts: list[ScrapedAccount] | None = None
    error_type: str | None = None
    error_message: str | None = None
    live_session_url: str | None = None
