"""BankLink: linked-account core for personal finance dashboards.

This package keeps a consistent, locally cached view of a user's balances and
transactions across structurally different upstream providers:
- Plaid (global aggregator) via the Plaid Python SDK
- A regional scraping microservice driving browser automation
- Encrypted credential storage with legacy-token migration
- A canonical account/transaction schema with one sign convention
- Cached financial summaries and daily snapshots for trend charts
"""

__version__ = "0.1.0"
