"""Provider adapters: each maps one upstream into canonical records."""

from .base import BestEffortResult
from .plaid import PlaidAdapter, TokenExchange, classify_plaid_error
from .scraper import ScraperAdapter, bank_display_name, classify_scrape_failure
from .scraper_schemas import ScraperCredentials

__all__ = [
    "BestEffortResult",
    "PlaidAdapter",
    "ScraperAdapter",
    "ScraperCredentials",
    "TokenExchange",
    "bank_display_name",
    "classify_plaid_error",
    "classify_scrape_failure",
]
