"""Document storage for connections, canonical records and summaries."""

from .base import (
    ACCOUNTS,
    CATEGORIZED_TRANSACTIONS,
    CONNECTIONS,
    MANUAL_ASSETS,
    MANUAL_LIABILITIES,
    MAX_BATCH_SIZE,
    SNAPSHOTS,
    SUMMARIES,
    SUMMARY_DOC_ID,
    TRANSACTIONS,
    Document,
    DocumentStore,
    WriteBatch,
    chunked,
    user_collection,
)
from .duckdb_store import DuckDBDocumentStore, DuckDBWriteBatch

__all__ = [
    "ACCOUNTS",
    "CATEGORIZED_TRANSACTIONS",
    "CONNECTIONS",
    "MANUAL_ASSETS",
    "MANUAL_LIABILITIES",
    "MAX_BATCH_SIZE",
    "SNAPSHOTS",
    "SUMMARIES",
    "SUMMARY_DOC_ID",
    "TRANSACTIONS",
    "Document",
    "DocumentStore",
    "DuckDBDocumentStore",
    "DuckDBWriteBatch",
    "WriteBatch",
    "chunked",
    "user_collection",
]
