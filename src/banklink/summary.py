"""Financial summary cache and daily snapshots.

Stored layout per user:

    users/{uid}/summaries/financial   cached metrics, computedAt, version
    users/{uid}/snapshots/{YYYY-MM-DD} one immutable snapshot per calendar day

A cached summary is fresh while ``now - computedAt <= ttl``. Mutations call
``invalidate``, which rewinds ``computedAt`` to the epoch so the next read
recomputes. ``version`` only ever grows, via the store's atomic increment.
"""

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import polars as pl

from .config import CacheConfig
from .errors import StoreError, ValidationError
from .models import CachedSummary, DailySnapshot, FinancialMetrics, utc_now
from .store import (
    ACCOUNTS,
    MANUAL_ASSETS,
    MANUAL_LIABILITIES,
    SNAPSHOTS,
    SUMMARIES,
    SUMMARY_DOC_ID,
    TRANSACTIONS,
    DocumentStore,
    chunked,
    user_collection,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

LIABILITY_CLASSES = ["credit", "loan"]
LIQUID_SUBTYPES = ["checking", "savings"]
MANUAL_LIQUID_TYPES = [
    "Cash",
    "Wallet",
    "Checking Account",
    "Savings Account",
    "PayPal Balance",
    "Digital Wallet Balance",
    "Bank Account",
]
MANUAL_INVESTMENT_TYPES = ["investment", "Investment", "crypto"]

HISTORY_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(Decimal(str(value)))
    except InvalidOperation:
        return 0.0


def history_range(period: str, today: date) -> tuple[date, date]:
    """Inclusive date range for a history period (``7d|30d|90d|1y|all``)."""
    if period == "all":
        return date(1970, 1, 1), today
    days = HISTORY_PERIODS.get(period)
    if days is None:
        raise ValidationError(
            f"Unknown history period {period!r}; expected one of "
            f"{', '.join([*HISTORY_PERIODS, 'all'])}"
        )
    return today - timedelta(days=days), today


class SummaryService:
    """Computes, caches and snapshots per-user financial metrics."""

    def __init__(
        self,
        store: DocumentStore,
        config: CacheConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or CacheConfig()
        self.clock = clock

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _accounts_frame(self, user_id: str) -> pl.DataFrame:
        rows = []
        for doc in self.store.list_documents(user_collection(user_id, ACCOUNTS)):
            balance = doc.data.get("balance") or {}
            rows.append(
                {
                    "account_class": doc.data.get("accountClass") or "other",
                    "subtype": doc.data.get("subtype"),
                    "balance": _to_float(balance.get("current")),
                }
            )
        return pl.DataFrame(
            rows,
            schema={"account_class": pl.Utf8, "subtype": pl.Utf8, "balance": pl.Float64},
        )

    def _manual_frame(self, user_id: str, name: str) -> pl.DataFrame:
        rows = [
            {
                "type": doc.data.get("type") or "other",
                "amount": _to_float(doc.data.get("amount") or doc.data.get("balance")),
            }
            for doc in self.store.list_documents(user_collection(user_id, name))
        ]
        return pl.DataFrame(rows, schema={"type": pl.Utf8, "amount": pl.Float64})

    def _recent_amounts(self, user_id: str, today: date) -> pl.Series:
        start = today - timedelta(days=self.config.income_window_days)
        docs = self.store.query_range(
            user_collection(user_id, TRANSACTIONS),
            "postedDate",
            start.isoformat(),
            today.isoformat(),
        )
        return pl.Series(
            "amount", [_to_float(d.data.get("amount")) for d in docs], dtype=pl.Float64
        )

    def compute_metrics(self, user_id: str) -> FinancialMetrics:
        """Aggregate linked accounts, manual entries and recent transactions.

        Credit and loan balances count as liabilities (by magnitude). Depository
        checking/savings accounts (or depository without a subtype) are liquid.
        Income and expenses cover the last ``income_window_days`` using the
        canonical sign: positive in, negative out.
        """
        accounts = self._accounts_frame(user_id)
        assets = self._manual_frame(user_id, MANUAL_ASSETS)
        liabilities = self._manual_frame(user_id, MANUAL_LIABILITIES)
        amounts = self._recent_amounts(user_id, self.clock().date())

        is_liability = pl.col("account_class").is_in(LIABILITY_CLASSES)
        linked_assets = accounts.filter(~is_liability)["balance"].sum()
        linked_liabilities = accounts.filter(is_liability)["balance"].abs().sum()

        linked_liquid = accounts.filter(
            (pl.col("account_class") == "depository")
            & (pl.col("subtype").is_null() | pl.col("subtype").is_in(LIQUID_SUBTYPES))
        )["balance"].sum()
        linked_investments = accounts.filter(pl.col("account_class") == "investment")[
            "balance"
        ].sum()

        manual_assets = assets["amount"].sum()
        manual_liquid = assets.filter(pl.col("type").is_in(MANUAL_LIQUID_TYPES))["amount"].sum()
        manual_investments = assets.filter(pl.col("type").is_in(MANUAL_INVESTMENT_TYPES))[
            "amount"
        ].sum()
        manual_liabilities = liabilities["amount"].sum()

        income = amounts.filter(amounts > 0).sum()
        expenses = -amounts.filter(amounts < 0).sum()

        total_assets = linked_assets + manual_assets
        total_liabilities = linked_liabilities + manual_liabilities
        return FinancialMetrics(
            total_assets=round(total_assets, 2),
            total_liabilities=round(total_liabilities, 2),
            net_worth=round(total_assets - total_liabilities, 2),
            liquid_assets=round(linked_liquid + manual_liquid, 2),
            investments=round(linked_investments + manual_investments, 2),
            monthly_income=round(income, 2),
            monthly_expenses=round(expenses, 2),
            monthly_cash_flow=round(income - expenses, 2),
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _summary_path(self, user_id: str) -> str:
        return user_collection(user_id, SUMMARIES)

    def get_summary(self, user_id: str) -> CachedSummary:
        """Return the cached summary, recomputing it once the TTL has passed.

        If recomputation fails and a previous value exists, that value is
        returned with ``is_stale=True``. With no previous value the error
        propagates.
        """
        collection = self._summary_path(user_id)
        doc = self.store.get(collection, SUMMARY_DOC_ID)
        cached = CachedSummary.from_document(doc) if doc and "metrics" in doc else None

        now = self.clock()
        if cached is not None:
            age = (now - cached.computed_at).total_seconds()
            if 0 <= age <= self.config.summary_ttl_seconds:
                logger.debug(f"Returning cached summary for {user_id} (age {age:.0f}s)")
                return cached

        try:
            metrics = self.compute_metrics(user_id)
        except Exception:
            if cached is None:
                raise
            logger.warning(
                f"Summary recompute failed for {user_id}; serving last known value",
                exc_info=True,
            )
            return cached.model_copy(update={"is_stale": True})

        try:
            self.store.set(
                collection,
                SUMMARY_DOC_ID,
                {"metrics": metrics.to_document(), "computedAt": now.isoformat()},
                merge=True,
            )
            version = self.store.increment(collection, SUMMARY_DOC_ID, "version")
        except StoreError as e:
            logger.warning(f"Could not cache summary for {user_id}: {e}")
            version = cached.version if cached is not None else 0

        logger.info(f"Computed summary for {user_id} (version {version})")
        return CachedSummary(metrics=metrics, computed_at=now, version=version)

    def invalidate(self, user_id: str) -> None:
        """Force the next ``get_summary`` to recompute. No-op without a cache entry."""
        collection = self._summary_path(user_id)
        if self.store.get(collection, SUMMARY_DOC_ID) is None:
            logger.debug(f"No cached summary to invalidate for {user_id}")
            return
        self.store.set(
            collection, SUMMARY_DOC_ID, {"computedAt": EPOCH.isoformat()}, merge=True
        )
        logger.info(f"Invalidated summary cache for {user_id}")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_daily_snapshot(self, user_id: str, on: date | None = None) -> DailySnapshot:
        """Write today's (or ``on``'s) snapshot, replacing any earlier one that day."""
        now = self.clock()
        day = on or now.date()
        metrics = self.get_summary(user_id).metrics
        snapshot = DailySnapshot(
            user_id=user_id, date=day, created_at=now, **metrics.model_dump()
        )
        self.store.set(
            user_collection(user_id, SNAPSHOTS), day.isoformat(), snapshot.to_document()
        )
        logger.info(f"Saved snapshot for {user_id} on {day} (net worth {metrics.net_worth})")
        return snapshot

    def get_snapshots(self, user_id: str, start: date, end: date) -> list[DailySnapshot]:
        """Snapshots in ``[start, end]`` ascending by date; missing days are skipped."""
        if start > end:
            raise ValidationError(f"start {start} is after end {end}")
        docs = self.store.query_range(
            user_collection(user_id, SNAPSHOTS), "date", start.isoformat(), end.isoformat()
        )
        return [DailySnapshot.from_document(d.data) for d in docs]

    def get_latest_snapshot(self, user_id: str) -> DailySnapshot | None:
        docs = self.store.query_range(
            user_collection(user_id, SNAPSHOTS),
            "date",
            date.min.isoformat(),
            date.max.isoformat(),
            descending=True,
            limit=1,
        )
        return DailySnapshot.from_document(docs[0].data) if docs else None

    def prune_snapshots(self, user_id: str, keep_days: int | None = None) -> int:
        """Delete snapshots older than ``keep_days`` (default from config)."""
        keep = keep_days if keep_days is not None else self.config.snapshot_retention_days
        if keep < 1:
            raise ValidationError("keep_days must be at least 1")
        cutoff = self.clock().date() - timedelta(days=keep)
        collection = user_collection(user_id, SNAPSHOTS)
        old = self.store.query_range(
            collection, "date", date.min.isoformat(), (cutoff - timedelta(days=1)).isoformat()
        )
        for chunk in chunked([d.id for d in old]):
            batch = self.store.batch()
            for doc_id in chunk:
                batch.delete(collection, doc_id)
            batch.commit()
        if old:
            logger.info(f"Pruned {len(old)} snapshots older than {cutoff} for {user_id}")
        return len(old)
