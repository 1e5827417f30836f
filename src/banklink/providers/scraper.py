"""Regional scraper adapter.

Talks to the browser-automation microservice over HTTP. One ``POST /scrape``
returns both balances and transactions, and each call can take minutes, so a
scrape session is never paid for twice: there is a single ``scrape_all``
entry point and no separate account/transaction calls.

Every attempt ends in exactly one of three states:

- success: the response is mapped into canonical records and returned
- retryable failure: backoff, then another attempt (up to ``max_retries``)
- terminal failure: raised immediately, never retried

Scraper amounts are already signed the canonical way. The charged amount is
preferred over the original amount and nothing is negated.
"""

import hashlib
import logging
import random
from collections import Counter
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import requests
from pydantic import ValidationError as SchemaValidationError
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt

from ..config import ScraperConfig
from ..deadline import Deadline
from ..errors import (
    BankLinkError,
    RetryExhausted,
    TerminalCredentialError,
    UnknownUpstreamError,
    UpstreamUnavailable,
    ValidationError,
)
from ..models import (
    AccountClass,
    Balance,
    CanonicalAccount,
    CanonicalTransaction,
    ProviderId,
    ScrapeResult,
)
from .scraper_schemas import (
    ScrapedAccount,
    ScrapedTransaction,
    ScrapeRequest,
    ScrapeResponse,
    ScraperCredentials,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "ILS"
CURRENCY_SYMBOLS = {"₪": "ILS", "NIS": "ILS", "$": "USD", "€": "EUR", "£": "GBP"}
POSTED_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y", "%d-%m-%Y")

TERMINAL_ERROR_TYPES = frozenset(
    {
        "INVALID_PASSWORD",
        "CHANGE_PASSWORD",
        "ACCOUNT_BLOCKED",
        "INVALID_OTP",
        "TWO_FACTOR_RETRIEVER_MISSING",
    }
)
RETRYABLE_ERROR_TYPES = frozenset(
    {
        "TIMEOUT",
        "NETWORK_ERROR",
        "RATE_LIMITED",
        "SERVICE_UNAVAILABLE",
        "INTERNAL_SERVER_ERROR",
    }
)

BANK_DISPLAY_NAMES = {
    "hapoalim": "Bank Hapoalim",
    "leumi": "Bank Leumi",
    "discount": "Discount Bank",
    "mizrahi": "Mizrahi Tefahot",
    "max": "Max",
    "isracard": "Isracard",
    "visaCal": "Visa Cal",
    "amex": "American Express",
    "otsarHahayal": "Otsar Ha-Hayal",
    "beinleumi": "First International Bank",
    "massad": "Bank Massad",
    "yahav": "Bank Yahav",
    "union": "Union Bank",
    "mercantile": "Mercantile Bank",
    "behatsdaa": "Behatsdaa",
    "beyahadBishvilha": "Beyahad Bishvilha",
    "oneZero": "One Zero",
    "pagi": "Bank Pagi",
}


def bank_display_name(company_id: str) -> str:
    return BANK_DISPLAY_NAMES.get(company_id, company_id)


def classify_scrape_failure(
    *,
    status_code: int | None = None,
    error_type: str | None = None,
    message: str | None = None,
) -> BankLinkError:
    """Classify a failed scrape attempt into exactly one error kind.

    ``error_type`` from the service body wins over the HTTP status: the service
    answers 500 with ``INTERNAL_SERVER_ERROR`` but reports bad passwords inside
    an otherwise successful response.
    """
    detail = message or f"Scrape failed: status={status_code} error_type={error_type}"

    if error_type in TERMINAL_ERROR_TYPES:
        return TerminalCredentialError(detail, error_type=error_type)
    if error_type in RETRYABLE_ERROR_TYPES:
        return UpstreamUnavailable(detail, error_type=error_type)
    if status_code is not None:
        if status_code == 429 or status_code >= 500:
            return UpstreamUnavailable(detail, error_type=error_type)
        if status_code in (400, 422):
            return ValidationError(detail)
    return UnknownUpstreamError(detail, error_type=error_type)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, BankLinkError) and exc.retryable


def _parse_posted_date(raw: str | None) -> date:
    if not raw:
        logger.debug("Scraped transaction has no date; using today")
        return datetime.now(UTC).date()
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        for fmt in POSTED_DATE_FORMATS:
            try:
                return datetime.strptime(raw[:10], fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Unrecognized transaction date: {raw!r}") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.date()


def _currency_code(raw: str | None) -> str | None:
    """ISO 4217 code for a scraped currency; feeds often send symbols instead."""
    if not raw:
        return None
    value = raw.strip()
    if value in CURRENCY_SYMBOLS:
        return CURRENCY_SYMBOLS[value]
    if len(value) == 3 and value.isascii() and value.isalpha():
        return value.upper()
    logger.debug(f"Unknown currency {value!r}; using {DEFAULT_CURRENCY}")
    return DEFAULT_CURRENCY


def _synthetic_id(account_id: str, tx: ScrapedTransaction, occurrence: int) -> str:
    """Stable id for transactions the bank reports without an identifier.

    Identical rows in one scrape (two equal coffees on the same day) get an
    occurrence suffix so they stay distinct and re-scrapes stay idempotent.
    """
    key = "|".join(
        str(part)
        for part in (
            account_id,
            tx.date,
            tx.charged_amount,
            tx.original_amount,
            tx.description,
            occurrence,
        )
    )
    return "tx_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:20]


class ScraperAdapter:
    """HTTP client for the scraping microservice with retry and classification."""

    provider_id = ProviderId.ISRAEL

    def __init__(
        self,
        config: ScraperConfig,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based).

        ``min(max_delay, base * 2**attempt + uniform(0, jitter))``
        """
        jitter = self._rng.uniform(0, self.config.jitter) if self.config.jitter else 0.0
        return min(self.config.max_delay, self.config.base_delay * 2**attempt + jitter)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.backoff_delay(retry_state.attempt_number - 1)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        error_type = getattr(exc, "error_type", None) or type(exc).__name__
        next_sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Scrape attempt {retry_state.attempt_number} failed ({error_type}); "
            f"retrying in {next_sleep:.2f}s"
        )

    def scrape_all(
        self, credentials: ScraperCredentials, deadline: Deadline | None = None
    ) -> ScrapeResult:
        """Run one scrape session, retrying transient failures.

        Raises:
            TerminalCredentialError: The bank rejected the login (one attempt)
            RetryExhausted: Retryable failures persisted through every attempt
            ValidationError: The service rejected the request shape
            UnknownUpstreamError: A failure that matched no known kind
            OperationCancelled: The deadline passed or the caller cancelled
        """
        deadline = deadline or Deadline.none()

        def sleep(seconds: float) -> None:
            if self._sleep is not None:
                deadline.check()
                self._sleep(seconds)
                deadline.check()
            else:
                deadline.sleep(seconds)

        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=sleep,
            before_sleep=self._before_sleep,
        )

        logger.info(f"Starting scrape for {credentials.company_id}")
        try:
            for attempt in retrying:
                with attempt:
                    response = self._attempt(credentials, deadline)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            logger.error(
                f"Scrape for {credentials.company_id} failed after {attempts} attempts"
            )
            raise RetryExhausted(
                f"Scrape for {credentials.company_id} failed after {attempts} attempts",
                last_error=last_error,
                attempts=attempts,
            ) from last_error

        try:
            result = self._map_response(response, credentials.company_id)
        except (SchemaValidationError, ValueError) as e:
            logger.error(
                f"Scrape for {credentials.company_id} returned data that could not be mapped"
            )
            raise UnknownUpstreamError(
                f"Scraper response for {credentials.company_id} could not be mapped: {e}"
            ) from e
        if not result.accounts:
            logger.warning(
                f"Scrape for {credentials.company_id} succeeded with zero accounts"
            )
        logger.info(
            f"Scrape for {credentials.company_id} returned {len(result.accounts)} accounts "
            f"and {len(result.transactions)} transactions"
        )
        return result

    def _attempt(
        self, credentials: ScraperCredentials, deadline: Deadline
    ) -> ScrapeResponse:
        deadline.check()
        timeout = deadline.bound(self.config.attempt_timeout)
        body = ScrapeRequest(
            company_id=credentials.company_id,
            credentials=credentials.credentials,
            show_browser=self.config.show_browser,
        ).model_dump(by_alias=True)

        try:
            http_response = self.session.post(
                f"{self.config.service_url}/scrape", json=body, timeout=timeout
            )
        except requests.Timeout as e:
            raise UpstreamUnavailable(
                f"Scrape attempt timed out after {timeout}s", error_type="TIMEOUT"
            ) from e
        except requests.ConnectionError as e:
            raise UpstreamUnavailable(
                "Scraper service unreachable", error_type="NETWORK_ERROR"
            ) from e

        payload = self._json_body(http_response)
        error_type = payload.get("errorType") if isinstance(payload, dict) else None

        if not http_response.ok:
            raise classify_scrape_failure(
                status_code=http_response.status_code,
                error_type=error_type if isinstance(error_type, str) else None,
            )

        try:
            parsed = ScrapeResponse.model_validate(payload)
        except SchemaValidationError as e:
            raise UnknownUpstreamError("Scraper returned a malformed response") from e

        if not parsed.success:
            raise classify_scrape_failure(error_type=parsed.error_type)
        return parsed

    @staticmethod
    def _json_body(http_response: requests.Response) -> Any:
        try:
            return http_response.json()
        except ValueError:
            return None

    def _map_response(self, response: ScrapeResponse, company_id: str) -> ScrapeResult:
        institution_name = bank_display_name(company_id)
        accounts: list[CanonicalAccount] = []
        transactions: list[CanonicalTransaction] = []

        for raw in response.accounts or []:
            accounts.append(self._to_account(raw, company_id, institution_name))
            seen: Counter[str] = Counter()
            for tx in raw.txns:
                transactions.append(self._to_transaction(tx, raw.account_number, seen))

        return ScrapeResult(accounts=accounts, transactions=transactions)

    @staticmethod
    def _to_account(
        raw: ScrapedAccount, company_id: str, institution_name: str
    ) -> CanonicalAccount:
        return CanonicalAccount(
            id=raw.account_number,
            provider_id=ProviderId.ISRAEL,
            institution_id=company_id,
            institution_name=institution_name,
            display_name=f"Account {raw.account_number}",
            account_class=AccountClass.DEPOSITORY,
            masked_number=raw.account_number[-4:],
            currency_code=DEFAULT_CURRENCY,
            balance=Balance(current=raw.balance if raw.balance is not None else Decimal(0)),
        )

    @staticmethod
    def _to_transaction(
        tx: ScrapedTransaction, account_id: str, seen: Counter[str]
    ) -> CanonicalTransaction:
        if tx.charged_amount is not None:
            amount = tx.charged_amount
        elif tx.original_amount is not None:
            amount = tx.original_amount
        else:
            amount = Decimal(0)

        tx_id = tx.identifier
        if not tx_id:
            base = _synthetic_id(account_id, tx, 0)
            tx_id = base if seen[base] == 0 else _synthetic_id(account_id, tx, seen[base])
            seen[base] += 1

        return CanonicalTransaction(
            id=tx_id,
            account_id=account_id,
            amount=amount,
            posted_date=_parse_posted_date(tx.date),
            description=tx.description or tx.memo or "Unknown",
            merchant_name=tx.description or None,
            category_hint=[tx.category] if tx.category else None,
            pending=tx.status == "pending",
            currency_code=(
                _currency_code(tx.charged_currency)
                or _currency_code(tx.original_currency)
                or DEFAULT_CURRENCY
            ),
            original_amount=tx.original_amount,
            original_currency=_currency_code(tx.original_currency),
        )
