"""Global aggregator adapter built on the Plaid Python SDK.

Handles the link handshake (link token, public token exchange), on-demand
account and transaction fetches, and best-effort item removal. Plaid reports
transaction amounts with positive meaning money out of the account; the
adapter negates them into the canonical convention before returning.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import urllib3
from plaid.api import plaid_api
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.item_public_token_exchange_request import (
    ItemPublicTokenExchangeRequest,
)
from plaid.model.item_remove_request import ItemRemoveRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions
from pydantic import ValidationError as SchemaValidationError

from ..config import PlaidConfig
from ..deadline import Deadline
from ..errors import (
    BankLinkError,
    EncryptionError,
    TerminalCredentialError,
    UnknownUpstreamError,
    UpstreamUnavailable,
    ValidationError,
)
from ..models import (
    Balance,
    CanonicalAccount,
    CanonicalTransaction,
    Connection,
    ProviderId,
)
from ..vault import CredentialVault
from .base import BestEffortResult
from .plaid_schemas import (
    AccountSchema,
    AccountsResponseSchema,
    PlaidEnvironment,
    PlaidErrorBody,
    TokenExchangeResponseSchema,
    TransactionSchema,
    TransactionsResponseSchema,
)

logger = logging.getLogger(__name__)

TERMINAL_ERROR_CODES = frozenset(
    {
        "ITEM_LOGIN_REQUIRED",
        "INVALID_CREDENTIALS",
        "INVALID_MFA",
        "ITEM_LOCKED",
        "USER_SETUP_REQUIRED",
    }
)
VALIDATION_ERROR_CODES = frozenset(
    {"INVALID_PUBLIC_TOKEN", "INVALID_INPUT", "INVALID_REQUEST", "INVALID_FIELD"}
)
UNAVAILABLE_ERROR_CODES = frozenset(
    {
        "RATE_LIMIT_EXCEEDED",
        "PRODUCT_NOT_READY",
        "INSTITUTION_DOWN",
        "INSTITUTION_NOT_RESPONDING",
        "INTERNAL_SERVER_ERROR",
        "PLANNED_MAINTENANCE",
    }
)
UNAVAILABLE_ERROR_TYPES = frozenset({"RATE_LIMIT_EXCEEDED", "API_ERROR", "INSTITUTION_ERROR"})

DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class TokenExchange:
    """Long-lived aggregator secret plus its item id."""

    external_secret: str = field(repr=False)
    external_item_id: str


def _error_body(exc: ApiException) -> PlaidErrorBody:
    body = getattr(exc, "body", None)
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not isinstance(body, str) or not body:
        return PlaidErrorBody()
    try:
        return PlaidErrorBody.model_validate(json.loads(body))
    except (ValueError, SchemaValidationError):
        return PlaidErrorBody()


def classify_plaid_error(exc: ApiException, operation: str) -> BankLinkError:
    """Map a Plaid ``ApiException`` to exactly one error type."""
    details = _error_body(exc)
    code = details.error_code
    status = getattr(exc, "status", None) or 0
    message = f"Plaid {operation} failed: status={status} error_code={code}"

    if code in TERMINAL_ERROR_CODES:
        return TerminalCredentialError(message, error_type=code)
    if code in VALIDATION_ERROR_CODES:
        return ValidationError(message)
    if (
        code in UNAVAILABLE_ERROR_CODES
        or details.error_type in UNAVAILABLE_ERROR_TYPES
        or status == 429
        or status >= 500
        or status == 0
    ):
        return UpstreamUnavailable(message)
    if status == 400 and code is None:
        return ValidationError(message)
    return UnknownUpstreamError(message, error_type=code)


class PlaidAdapter:
    """Plaid client wrapper that speaks only canonical types."""

    provider_id = ProviderId.PLAID

    def __init__(
        self,
        config: PlaidConfig,
        vault: CredentialVault,
        client: Any | None = None,
    ):
        self.config = config
        self.vault = vault
        if client is None:
            configuration = Configuration(
                host=PlaidEnvironment(config.environment).host,
                api_key={"clientId": config.client_id, "secret": config.secret},
            )
            # Type as Any to avoid pyright partial-unknowns from the SDK stubs
            client = plaid_api.PlaidApi(ApiClient(configuration))
        self.client: Any = client

        logger.debug(f"Initialized Plaid adapter for {config.environment} environment")

    def _call(
        self, operation: str, method_name: str, request: Any, deadline: Deadline | None
    ) -> Any:
        deadline = deadline or Deadline.none()
        deadline.check()
        kwargs: dict[str, Any] = {}
        timeout = deadline.remaining()
        if timeout is not None:
            kwargs["_request_timeout"] = timeout
        try:
            return getattr(self.client, method_name)(request, **kwargs)
        except ApiException as e:
            raise classify_plaid_error(e, operation) from e
        except urllib3.exceptions.HTTPError as e:
            raise UpstreamUnavailable(f"Plaid {operation} failed: {type(e).__name__}") from e

    def create_link_token(
        self,
        user_id: str,
        mode: str = "create",
        existing_connection: Connection | None = None,
        deadline: Deadline | None = None,
    ) -> str:
        """Create a Link token for a new connection or to repair an existing one.

        In update mode the stored secret is revealed and passed as
        ``access_token``. If it cannot be decrypted the token is issued in
        create mode instead, so the user can still link from scratch.
        """
        if not user_id:
            raise ValidationError("user_id is required to create a link token")
        if mode not in ("create", "update"):
            raise ValidationError(f"Unknown link token mode: {mode}")

        access_token: str | None = None
        if mode == "update":
            if existing_connection is None:
                raise ValidationError("Update mode requires an existing connection")
            try:
                access_token = self.vault.reveal(existing_connection.encrypted_secret).secret
            except EncryptionError:
                logger.warning(
                    f"Could not read stored secret for connection {existing_connection.id}; "
                    "falling back to create mode"
                )

        params: dict[str, Any] = {
            "client_name": self.config.client_name,
            "country_codes": [CountryCode(c) for c in self.config.country_codes],
            "language": self.config.language,
            "user": LinkTokenCreateRequestUser(client_user_id=user_id),
        }
        if access_token:
            params["access_token"] = access_token
        else:
            params["products"] = [Products(p) for p in self.config.products]

        response = self._call(
            "link_token_create", "link_token_create", LinkTokenCreateRequest(**params), deadline
        )
        link_token = getattr(response, "link_token", None)
        if not isinstance(link_token, str) or not link_token:
            raise UnknownUpstreamError("Plaid link_token_create returned no link token")

        logger.info(
            f"Created Plaid link token for user {user_id} "
            f"({'update' if access_token else 'create'} mode)"
        )
        return link_token

    def exchange_public_token(
        self, public_token: str, deadline: Deadline | None = None
    ) -> TokenExchange:
        """Exchange a one-time public token. Never retried: the token is single use."""
        if not public_token:
            raise ValidationError("public_token is required")

        response = self._call(
            "item_public_token_exchange",
            "item_public_token_exchange",
            ItemPublicTokenExchangeRequest(public_token=public_token),
            deadline,
        )
        try:
            parsed = TokenExchangeResponseSchema.model_validate(response)
        except SchemaValidationError as e:
            raise UnknownUpstreamError("Plaid token exchange returned a malformed response") from e

        logger.info(f"Exchanged Plaid public token for item {parsed.item_id}")
        return TokenExchange(
            external_secret=parsed.access_token, external_item_id=parsed.item_id
        )

    def _institution_name(self, institution_id: str, deadline: Deadline | None) -> str:
        request = InstitutionsGetByIdRequest(
            institution_id=institution_id,
            country_codes=[CountryCode(c) for c in self.config.country_codes],
        )
        try:
            response = self._call(
                "institutions_get_by_id", "institutions_get_by_id", request, deadline
            )
            name = getattr(getattr(response, "institution", None), "name", None)
        except BankLinkError as e:
            logger.warning(
                f"Institution lookup failed for {institution_id}: {type(e).__name__}"
            )
            return institution_id
        return name if isinstance(name, str) and name else institution_id

    @staticmethod
    def _to_account(
        schema: AccountSchema, institution_id: str, institution_name: str
    ) -> CanonicalAccount:
        balances = schema.balances
        current = balances.current
        if current is None:
            current = balances.available if balances.available is not None else 0
        return CanonicalAccount(
            id=schema.account_id,
            provider_id=ProviderId.PLAID,
            institution_id=institution_id,
            institution_name=institution_name,
            display_name=schema.name,
            official_name=schema.official_name,
            account_class=schema.account_class,
            subtype=schema.subtype,
            masked_number=schema.mask,
            currency_code=(
                balances.iso_currency_code
                or balances.unofficial_currency_code
                or DEFAULT_CURRENCY
            ),
            balance=Balance(
                current=current, available=balances.available, limit=balances.limit
            ),
        )

    def fetch_accounts(
        self, secret: str, deadline: Deadline | None = None
    ) -> list[CanonicalAccount]:
        """Fetch every account on the item, mapped to canonical accounts."""
        response = self._call(
            "accounts_get", "accounts_get", AccountsGetRequest(access_token=secret), deadline
        )
        try:
            parsed = AccountsResponseSchema.model_validate(response)
        except SchemaValidationError as e:
            raise UnknownUpstreamError("Plaid accounts response failed validation") from e

        institution_id = parsed.item.institution_id or "unknown"
        institution_name = (
            self._institution_name(institution_id, deadline)
            if parsed.item.institution_id
            else "Unknown institution"
        )
        accounts = [
            self._to_account(a, institution_id, institution_name) for a in parsed.accounts
        ]
        logger.info(f"Fetched {len(accounts)} Plaid accounts for item {parsed.item.item_id}")
        return accounts

    @staticmethod
    def _to_transaction(schema: TransactionSchema) -> CanonicalTransaction:
        return CanonicalTransaction(
            id=schema.transaction_id,
            account_id=schema.account_id,
            amount=-schema.amount,
            posted_date=schema.transaction_date,
            description=schema.description,
            merchant_name=schema.merchant_name,
            category_hint=schema.category_hint,
            pending=schema.pending,
            currency_code=(
                schema.iso_currency_code
                or schema.unofficial_currency_code
                or DEFAULT_CURRENCY
            ),
        )

    def fetch_transactions(
        self,
        secret: str,
        start: date,
        end: date,
        deadline: Deadline | None = None,
    ) -> list[CanonicalTransaction]:
        """Fetch transactions in ``[start, end]``, paging by ``batch_size``."""
        if start > end:
            raise ValidationError(f"start {start} is after end {end}")

        transactions: list[CanonicalTransaction] = []
        offset = 0
        while True:
            request = TransactionsGetRequest(
                access_token=secret,
                start_date=start,
                end_date=end,
                options=TransactionsGetRequestOptions(
                    count=self.config.batch_size, offset=offset
                ),
            )
            response = self._call("transactions_get", "transactions_get", request, deadline)
            try:
                page = TransactionsResponseSchema.model_validate(response)
            except SchemaValidationError as e:
                raise UnknownUpstreamError(
                    "Plaid transactions response failed validation"
                ) from e

            transactions.extend(self._to_transaction(tx) for tx in page.transactions)

            offset += len(page.transactions)
            if offset >= page.total_transactions or not page.transactions:
                break

        logger.info(f"Fetched {len(transactions)} Plaid transactions ({start} to {end})")
        return transactions

    def remove_item(self, secret: str, deadline: Deadline | None = None) -> BestEffortResult:
        """Revoke the item upstream. Failures are logged and reported, never raised."""
        try:
            self._call(
                "item_remove", "item_remove", ItemRemoveRequest(access_token=secret), deadline
            )
        except Exception as e:
            logger.warning(f"Plaid item removal failed (continuing cleanup): {type(e).__name__}")
            return BestEffortResult.failure(e)
        logger.info("Revoked Plaid item upstream")
        return BestEffortResult.success()

    def create_sandbox_public_token(
        self,
        institution_id: str = "ins_109508",
        initial_products: list[str] | None = None,
    ) -> str:
        """Create a Sandbox public token without running Link.

        Supports local development and integration tests against the sandbox.
        """
        if self.config.environment != "sandbox":
            raise ValidationError("Sandbox public tokens are only available in sandbox")

        # Only needed against the sandbox
        from plaid.model.sandbox_public_token_create_request import (
            SandboxPublicTokenCreateRequest,
        )

        products = initial_products or list(self.config.products)
        request = SandboxPublicTokenCreateRequest(
            institution_id=institution_id,
            initial_products=[Products(p) for p in products],
        )
        response = self._call(
            "sandbox_public_token_create", "sandbox_public_token_create", request, None
        )
        public_token = getattr(response, "public_token", None)
        if not isinstance(public_token, str) or not public_token:
            raise UnknownUpstreamError("Failed to create sandbox public token")
        return public_token
