"""Document store interface and user-scoped collection paths."""

from collections.abc import Iterator
from typing import Any, NamedTuple, Protocol

MAX_BATCH_SIZE = 500

CONNECTIONS = "banking_connections"
ACCOUNTS = "accounts"
TRANSACTIONS = "transactions"
CATEGORIZED_TRANSACTIONS = "categorizedTransactions"
SUMMARIES = "summaries"
SNAPSHOTS = "snapshots"
MANUAL_ASSETS = "manual_assets"
MANUAL_LIABILITIES = "manual_liabilities"

SUMMARY_DOC_ID = "financial"


def user_collection(user_id: str, name: str) -> str:
    """Collection path for one user, e.g. ``users/u1/accounts``."""
    if not user_id or "/" in user_id:
        raise ValueError(f"Invalid user id for collection path: {user_id!r}")
    return f"users/{user_id}/{name}"


class Document(NamedTuple):
    id: str
    data: dict[str, Any]


class WriteBatch(Protocol):
    """Group of writes applied atomically by ``commit``."""

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None: ...

    def delete(self, collection: str, doc_id: str) -> None: ...

    def commit(self) -> None: ...

    def __len__(self) -> int: ...


class DocumentStore(Protocol):
    """Minimal hierarchical document store used by the banking core."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None: ...

    def delete(self, collection: str, doc_id: str) -> None: ...

    def new_id(self, collection: str) -> str: ...

    def list_documents(self, collection: str) -> list[Document]: ...

    def query(self, collection: str, field: str, value: str) -> list[Document]: ...

    def query_range(
        self,
        collection: str,
        field: str,
        start: str,
        end: str,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]: ...

    def batch(self) -> WriteBatch: ...

    def increment(
        self, collection: str, doc_id: str, field: str, amount: int = 1
    ) -> int: ...

    def close(self) -> None: ...


def chunked(items: list[Any], size: int = MAX_BATCH_SIZE) -> Iterator[list[Any]]:
    """Yield slices of ``items`` no longer than one batch."""
    if size < 1 or size > MAX_BATCH_SIZE:
        raise ValueError(f"Chunk size must be between 1 and {MAX_BATCH_SIZE}")
    for i in range(0, len(items), size):
        yield items[i : i + size]
