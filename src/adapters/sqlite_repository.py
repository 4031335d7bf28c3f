"""SQLite repository adapter for local storage and tests.

Tags and labels are stored as JSON arrays; set membership goes through
``json_each``. One connection is opened per unit of work.
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from src.adapters.post_repository_base import Clock, SqlPostRepository
from src.adapters.query_builders import DatabaseBackend
from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError
from src.domain.models import Post

if TYPE_CHECKING:
    from src.config.settings import Settings

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 5.0

SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS post (
        uri TEXT PRIMARY KEY,
        cid TEXT NOT NULL,
        author TEXT NOT NULL,
        text TEXT NOT NULL DEFAULT '',
        reply_parent TEXT,
        reply_root TEXT,
        indexed_at INTEGER NOT NULL,
        has_image INTEGER NOT NULL DEFAULT 0,
        embed TEXT,
        algo_tags TEXT NOT NULL DEFAULT '[]',
        labels TEXT,
        sort_weight REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_post_indexed_at_cid ON post (indexed_at DESC, cid DESC)",
    "CREATE INDEX IF NOT EXISTS idx_post_author ON post (author)",
    "CREATE INDEX IF NOT EXISTS idx_post_sort_weight ON post (sort_weight DESC, cid DESC)",
    "CREATE INDEX IF NOT EXISTS idx_post_reply_parent ON post (reply_parent)",
    """
    CREATE TABLE IF NOT EXISTS sub_state (
        service TEXT PRIMARY KEY,
        cursor INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS list_members (
        did TEXT PRIMARY KEY,
        data TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS collection (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
)


class SQLiteRepository(SqlPostRepository):
    """SQLite-based post repository."""

    backend = DatabaseBackend.SQLITE

    def __init__(
        self,
        db_path: str,
        settings: "Settings | None" = None,
        *,
        chunk_size: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
            settings: Optional settings for page limits and windows
            chunk_size: Batch size for bulk upserts
            clock: Epoch-millis clock used by time-window queries
        """
        if chunk_size is not None and chunk_size <= 0:
            raise RepositoryError("chunk_size must be positive")
        super().__init__(settings, chunk_size=chunk_size, clock=clock)
        self.db_path = db_path

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._transaction("create schema") as (_, cur):
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)

    @contextmanager
    def _connection_scope(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(
        self, operation: str
    ) -> Iterator[tuple[sqlite3.Connection, sqlite3.Cursor]]:
        with self._connection_scope() as conn:
            cursor = conn.cursor()
            try:
                yield conn, cursor
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                logger.error(
                    "sqlite_transaction_failed", operation=operation, error=str(exc)
                )
                raise RepositoryError(f"Failed to {operation}: {exc}") from exc
            finally:
                cursor.close()

    def _row_to_post(self, row: sqlite3.Row) -> Post:
        """Convert database row to Post (JSON columns decoded)."""

        def _json(value: Any) -> Any:
            return json.loads(value) if value is not None else None

        return Post(
            uri=row["uri"],
            cid=row["cid"],
            author=row["author"],
            text=row["text"] or "",
            reply_parent=row["reply_parent"],
            reply_root=row["reply_root"],
            indexed_at=row["indexed_at"],
            has_image=bool(row["has_image"]),
            embed=_json(row["embed"]),
            algo_tags=_json(row["algo_tags"]) or [],
            labels=_json(row["labels"]),
            sort_weight=row["sort_weight"],
        )
