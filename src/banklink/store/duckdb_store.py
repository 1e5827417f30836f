"""DuckDB-backed document store.

Documents live in a single table keyed by ``(collection, doc_id)`` with the
body stored as JSON text. Field lookups use DuckDB's JSON functions, so
collections need no schema of their own.
"""

import json
import logging
import re
import threading
import uuid
from pathlib import Path
from typing import Any

import duckdb

from ..errors import StoreError
from .base import MAX_BATCH_SIZE, Document

logger = logging.getLogger(__name__)

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS documents (
        collection VARCHAR NOT NULL,
        doc_id VARCHAR NOT NULL,
        data VARCHAR NOT NULL,
        updated_at TIMESTAMP DEFAULT current_timestamp,
        PRIMARY KEY (collection, doc_id)
    )
"""


def _json_path(field: str) -> str:
    # Inlined into SQL, so only plain identifiers are accepted
    if not _FIELD_PATTERN.match(field):
        raise ValueError(f"Invalid document field name: {field!r}")
    return f"'$.{field}'"


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), default=str)


class DuckDBWriteBatch:
    """Buffered writes applied in one DuckDB transaction."""

    def __init__(self, store: "DuckDBDocumentStore"):
        self._store = store
        self._ops: list[tuple[str, str, str, dict[str, Any] | None, bool]] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _add(self, op: tuple[str, str, str, dict[str, Any] | None, bool]) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        if len(self._ops) >= MAX_BATCH_SIZE:
            raise StoreError(f"Batch exceeds {MAX_BATCH_SIZE} operations")
        self._ops.append(op)

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self._add(("set", collection, doc_id, dict(data), merge))

    def delete(self, collection: str, doc_id: str) -> None:
        self._add(("delete", collection, doc_id, None, False))

    def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        self._store._apply(self._ops)
        self._committed = True


class DuckDBDocumentStore:
    """Document store on a DuckDB file (or ``:memory:``).

    One connection is shared and guarded by a lock; every mutating call runs
    inside a transaction.
    """

    def __init__(self, path: str | Path = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = duckdb.connect(self.path)
            self._conn.execute(_SCHEMA)
        except duckdb.Error as e:
            raise StoreError(f"Failed to open document store at {self.path}: {e}") from e
        logger.debug(f"Opened document store at {self.path}")

    @classmethod
    def from_settings(cls, settings: Any) -> "DuckDBDocumentStore":
        return cls(settings.database.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "DuckDBDocumentStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def new_id(self, collection: str) -> str:
        return uuid.uuid4().hex

    def _fetch(self, sql: str, params: list[Any]) -> list[Document]:
        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except duckdb.Error as e:
                raise StoreError(f"Document query failed: {e}") from e
        return [Document(row[0], json.loads(row[1])) for row in rows]

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        docs = self._fetch(
            "SELECT doc_id, data FROM documents WHERE collection = ? AND doc_id = ?",
            [collection, doc_id],
        )
        return docs[0].data if docs else None

    def list_documents(self, collection: str) -> list[Document]:
        return self._fetch(
            "SELECT doc_id, data FROM documents WHERE collection = ? ORDER BY doc_id",
            [collection],
        )

    def query(self, collection: str, field: str, value: str) -> list[Document]:
        """Documents whose top-level ``field`` equals ``value`` (compared as text)."""
        path = _json_path(field)
        return self._fetch(
            f"""
            SELECT doc_id, data FROM documents
            WHERE collection = ? AND json_extract_string(data, {path}) = ?
            ORDER BY doc_id
            """,
            [collection, str(value)],
        )

    def query_range(
        self,
        collection: str,
        field: str,
        start: str,
        end: str,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        """Documents with ``start <= field <= end``, ordered by that field.

        Comparison is lexicographic, which orders ISO dates correctly.
        """
        path = _json_path(field)
        order = "DESC" if descending else "ASC"
        sql = f"""
            SELECT doc_id, data FROM documents
            WHERE collection = ?
              AND json_extract_string(data, {path}) BETWEEN ? AND ?
            ORDER BY json_extract_string(data, {path}) {order}
        """
        params: list[Any] = [collection, start, end]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return self._fetch(sql, params)

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self._apply([("set", collection, doc_id, dict(data), merge)])

    def delete(self, collection: str, doc_id: str) -> None:
        self._apply([("delete", collection, doc_id, None, False)])

    def batch(self) -> DuckDBWriteBatch:
        return DuckDBWriteBatch(self)

    def _read_locked(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
            [collection, doc_id],
        ).fetchone()
        return json.loads(row[0]) if row else None

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except duckdb.Error as e:
            logger.debug(f"Rollback failed: {e}")

    def _apply(
        self, ops: list[tuple[str, str, str, dict[str, Any] | None, bool]]
    ) -> None:
        if not ops:
            return
        with self._lock:
            try:
                self._conn.begin()
                for kind, collection, doc_id, data, merge in ops:
                    if kind == "delete":
                        self._conn.execute(
                            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                            [collection, doc_id],
                        )
                        continue
                    body = data or {}
                    if merge:
                        existing = self._read_locked(collection, doc_id) or {}
                        existing.update(body)
                        body = existing
                    self._conn.execute(
                        """
                        INSERT OR REPLACE INTO documents
                        (collection, doc_id, data, updated_at)
                        VALUES (?, ?, ?, current_timestamp)
                        """,
                        [collection, doc_id, _dumps(body)],
                    )
                self._conn.commit()
            except duckdb.Error as e:
                self._rollback()
                raise StoreError(f"Write of {len(ops)} operation(s) failed: {e}") from e

    def increment(
        self, collection: str, doc_id: str, field: str, amount: int = 1
    ) -> int:
        """Atomically add ``amount`` to an integer field and return the new value.

        A missing document or field starts from zero.
        """
        with self._lock:
            try:
                self._conn.begin()
                doc = self._read_locked(collection, doc_id) or {}
                value = int(doc.get(field) or 0) + amount
                doc[field] = value
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO documents
                    (collection, doc_id, data, updated_at)
                    VALUES (?, ?, ?, current_timestamp)
                    """,
                    [collection, doc_id, _dumps(doc)],
                )
                self._conn.commit()
            except duckdb.Error as e:
                self._rollback()
                raise StoreError(f"Increment of {field} failed: {e}") from e
        return value
