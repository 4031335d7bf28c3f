"""Auxiliary state persistence: subscription cursors, collections, list members."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Any, Final, Protocol

from psycopg2 import Error as PsycopgError

from src.adapters.bulk_persistence import encode_json
from src.adapters.query_builders import DatabaseBackend, in_clause
from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError, ValidationError
from src.domain.models import CollectionRecord, ListMember, SubState

logger = get_logger(__name__)

SUB_STATE_TABLE: Final[str] = "sub_state"
COLLECTION_TABLE: Final[str] = "collection"
LIST_MEMBERS_TABLE: Final[str] = "list_members"

# Columns that get_distinct_from_collection may read; array columns are
# flattened to their elements.
DISTINCT_SCALAR_FIELDS: Final[dict[str, frozenset[str]]] = {
    "post": frozenset(
        {"uri", "cid", "author", "reply_parent", "reply_root", "indexed_at"}
    ),
    SUB_STATE_TABLE: frozenset({"service", "cursor"}),
    COLLECTION_TABLE: frozenset({"key"}),
    LIST_MEMBERS_TABLE: frozenset({"did"}),
}
DISTINCT_ARRAY_FIELDS: Final[dict[str, frozenset[str]]] = {
    "post": frozenset({"algo_tags", "labels"}),
}

_DRIVER_ERRORS: Final[tuple[type[Exception], ...]] = (sqlite3.Error, PsycopgError)


class CursorProtocol(Protocol):
    """Protocol for database cursors used by the state store."""

    rowcount: int

    def execute(self, query: str, params: Any = ...) -> Any:
        """Execute a SQL statement with positional parameters."""

    def fetchone(self) -> Any:
        """Fetch a single result row."""

    def fetchall(self) -> Any:
        """Fetch all result rows."""

    def close(self) -> None:
        """Release cursor resources."""


class ConnectionProtocol(Protocol):
    """Protocol for connections compatible with the state store."""

    def cursor(self) -> CursorProtocol:
        """Create a database cursor."""

    def commit(self) -> None:
        """Commit the active transaction."""

    def rollback(self) -> None:
        """Abort the active transaction."""


GetConnectionCallable = Callable[[], AbstractContextManager[ConnectionProtocol]]


class StateStore:
    """Persistence layer for auxiliary key/value state.

    Shares the owning repository's connection provider; every public call
    is one transaction.
    """

    def __init__(self, get_conn: GetConnectionCallable) -> None:
        """Initialize the store.

        Args:
            get_conn: Callable returning a context manager that yields a database connection.
        """
        self._get_conn = get_conn

    # --- subscription cursors -------------------------------------------------

    def get_sub_state_cursor(self, service: str) -> SubState | None:
        """Load the persisted stream position for ``service``."""
        with self._transaction("read subscription cursor") as (backend, cursor):
            p = backend.placeholder
            cursor.execute(
                f"SELECT service, cursor FROM {SUB_STATE_TABLE} WHERE service = {p}",
                (service,),
            )
            row = cursor.fetchone()

        if not row:
            return None
        return SubState(service=row[0], cursor=int(row[1]))

    def update_sub_state_cursor(self, service: str, cursor_value: int) -> None:
        """Persist the stream position for ``service`` (no monotonic check)."""
        with self._transaction("update subscription cursor") as (backend, cursor):
            p = backend.placeholder
            cursor.execute(
                f"INSERT INTO {SUB_STATE_TABLE} (service, cursor) VALUES ({p}, {p}) "
                "ON CONFLICT (service) DO UPDATE SET cursor = excluded.cursor",
                (service, cursor_value),
            )

    # --- collection records ---------------------------------------------------

    def get_collection(self, key: str) -> CollectionRecord | None:
        """Load a collection record by key."""
        with self._transaction("read collection record") as (backend, cursor):
            p = backend.placeholder
            cursor.execute(
                f"SELECT key, value FROM {COLLECTION_TABLE} WHERE key = {p}", (key,)
            )
            row = cursor.fetchone()

        if not row:
            return None
        return CollectionRecord(key=row[0], value=self._decode_json(row[1], backend))

    def list_collection(self) -> list[CollectionRecord]:
        """Load every collection record ordered by key."""
        with self._transaction("list collection records") as (backend, cursor):
            cursor.execute(f"SELECT key, value FROM {COLLECTION_TABLE} ORDER BY key")
            rows = cursor.fetchall()
        return [
            CollectionRecord(key=row[0], value=self._decode_json(row[1], backend))
            for row in rows
        ]

    def insert_or_replace_record(self, key: str, value: Any) -> None:
        """Write a collection record; last write wins."""
        self.replace_many_records([CollectionRecord(key=key, value=value)])

    def replace_many_records(self, records: list[CollectionRecord]) -> int:
        """Write several collection records in one transaction."""
        if not records:
            return 0
        with self._transaction("replace collection records") as (backend, cursor):
            p = backend.placeholder
            for record in records:
                cursor.execute(
                    f"INSERT INTO {COLLECTION_TABLE} (key, value) VALUES ({p}, {p}) "
                    "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                    (record.key, encode_json(record.value, backend)),
                )
        logger.debug("collection_records_replaced", count=len(records))
        return len(records)

    def delete_record(self, key: str) -> bool:
        """Delete a collection record; True when a row was removed."""
        with self._transaction("delete collection record") as (backend, cursor):
            cursor.execute(
                f"DELETE FROM {COLLECTION_TABLE} WHERE key = {backend.placeholder}",
                (key,),
            )
            deleted = cursor.rowcount
        return deleted > 0

    # --- list members ---------------------------------------------------------

    def upsert_list_member(
        self, did: str, data: dict[str, Any] | None = None
    ) -> ListMember:
        """Insert or replace a list member keyed by DID."""
        member = ListMember(did=did, data=data)
        with self._transaction("upsert list member") as (backend, cursor):
            p = backend.placeholder
            cursor.execute(
                f"INSERT INTO {LIST_MEMBERS_TABLE} (did, data) VALUES ({p}, {p}) "
                "ON CONFLICT (did) DO UPDATE SET data = excluded.data",
                (member.did, encode_json(member.data, backend)),
            )
        return member

    def get_list_members(self) -> list[str]:
        """Return all member DIDs, sorted."""
        with self._transaction("list members") as (_, cursor):
            cursor.execute(f"SELECT did FROM {LIST_MEMBERS_TABLE} ORDER BY did")
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    def delete_many_did(self, dids: list[str]) -> int:
        """Delete list members whose DID is in ``dids``."""
        if not dids:
            return 0
        with self._transaction("delete list members") as (backend, cursor):
            clause, params = in_clause(backend, "did", dids)
            cursor.execute(f"DELETE FROM {LIST_MEMBERS_TABLE} WHERE {clause}", params)
            deleted = cursor.rowcount
        logger.info("list_members_deleted", requested=len(dids), deleted=deleted)
        return deleted

    # --- introspection --------------------------------------------------------

    def get_distinct_from_collection(self, table: str, field: str) -> list[Any]:
        """Distinct non-null values of ``field`` across all rows of ``table``.

        Array fields are flattened, so distinct tags or labels come back as
        individual strings.

        Raises:
            ValidationError: If the table/field pair is not readable
        """
        is_array = field in DISTINCT_ARRAY_FIELDS.get(table, frozenset())
        if not is_array and field not in DISTINCT_SCALAR_FIELDS.get(
            table, frozenset()
        ):
            raise ValidationError(f"Unsupported distinct field: {table}.{field}")

        with self._transaction("read distinct values") as (backend, cursor):
            if not is_array:
                query = (
                    f"SELECT DISTINCT {field} FROM {table} "
                    f"WHERE {field} IS NOT NULL ORDER BY {field}"
                )
            elif backend is DatabaseBackend.POSTGRES:
                query = (
                    f"SELECT DISTINCT unnest({field}) AS value FROM {table} "
                    "ORDER BY value"
                )
            else:
                query = (
                    f"SELECT DISTINCT json_each.value FROM {table}, "
                    f"json_each({table}.{field}) ORDER BY json_each.value"
                )
            cursor.execute(query)
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    # --- plumbing -------------------------------------------------------------

    @contextmanager
    def _transaction(
        self, operation: str
    ) -> Iterator[tuple[DatabaseBackend, CursorProtocol]]:
        with self._get_conn() as conn:
            backend = self._backend_for(conn)
            cursor = conn.cursor()
            try:
                yield backend, cursor
                conn.commit()
            except _DRIVER_ERRORS as exc:
                conn.rollback()
                logger.error(
                    "state_store_operation_failed", operation=operation, error=str(exc)
                )
                raise RepositoryError(f"Failed to {operation}: {exc}") from exc
            finally:
                cursor.close()

    @staticmethod
    def _backend_for(conn: ConnectionProtocol) -> DatabaseBackend:
        if isinstance(conn, sqlite3.Connection):
            return DatabaseBackend.SQLITE
        return DatabaseBackend.POSTGRES

    @staticmethod
    def _decode_json(value: Any, backend: DatabaseBackend) -> Any:
        # psycopg2 already decodes jsonb; SQLite hands back text
        if backend is DatabaseBackend.SQLITE and value is not None:
            return json.loads(value)
        return value
