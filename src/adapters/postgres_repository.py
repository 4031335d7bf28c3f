"""PostgreSQL repository implementation using psycopg2 with connection pooling.

Schema is owned by the Alembic migrations in ``alembic/versions``.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

from src.adapters.post_repository_base import Clock, SqlPostRepository
from src.adapters.query_builders import DatabaseBackend
from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError
from src.domain.models import Post

if TYPE_CHECKING:
    from src.config.settings import Settings


DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 1
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 10
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0
POOL_USAGE_WARNING_THRESHOLD: Final[float] = 0.8

logger = get_logger(__name__)


class PostgresRepository(SqlPostRepository):
    """PostgreSQL post repository backed by a connection pool."""

    backend = DatabaseBackend.POSTGRES

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
        *,
        clock: Clock | None = None,
    ):
        """Initialize PostgreSQL repository with pooled connections."""
        super().__init__(settings, clock=clock)
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password

        self._statement_timeout_ms = (
            settings.postgres_statement_timeout_ms if settings else 10_000
        )
        self._connect_timeout_seconds = (
            settings.postgres_connect_timeout_seconds if settings else 10
        )
        self._application_name = (
            settings.postgres_application_name if settings else "feed_store"
        )
        self._pool_min_connections = (
            settings.postgres_min_connections
            if settings
            else DEFAULT_POOL_MIN_CONNECTIONS
        )
        self._pool_max_connections = (
            settings.postgres_max_connections
            if settings
            else DEFAULT_POOL_MAX_CONNECTIONS
        )
        self._ssl_mode = settings.postgres_ssl_mode if settings else None

        self._pool_acquire_max_attempts = POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT
        self._pool_in_use_count = 0
        self._pool_high_watermark = 0
        self._pool_usage_warning_emitted = False
        self._pool_lock = Lock()

        if self._pool_min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self._pool_max_connections < self._pool_min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        self._pool = self._create_pool()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        """Create a PostgreSQL connection pool and validate it with SELECT 1."""
        options = (
            f"-c statement_timeout={self._statement_timeout_ms} "
            f"-c application_name={self._application_name}"
        )
        conn_kwargs: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "database": self._database,
            "user": self._user,
            "password": self._password,
            "connect_timeout": self._connect_timeout_seconds,
            "options": options,
        }
        if self._ssl_mode:
            conn_kwargs["sslmode"] = self._ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._pool_min_connections,
                self._pool_max_connections,
                **conn_kwargs,
            )
        except PsycopgError as exc:
            raise RepositoryError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                conn.rollback()
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise RepositoryError(f"PostgreSQL validation query failed: {exc}") from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._pool_min_connections,
            max_connections=self._pool_max_connections,
            statement_timeout_ms=self._statement_timeout_ms,
        )
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Acquire a connection from the pool with exponential backoff."""
        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= self._pool_acquire_max_attempts:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._pool_max_connections,
                        in_use=self._pool_in_use_count,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    in_use=self._pool_in_use_count,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)
                continue
            except PsycopgError as exc:
                raise RepositoryError(f"PostgreSQL connection error: {exc}") from exc

            self._register_connection_checkout()
            return conn

    def _register_connection_checkout(self) -> None:
        with self._pool_lock:
            self._pool_in_use_count += 1
            if self._pool_in_use_count > self._pool_high_watermark:
                self._pool_high_watermark = self._pool_in_use_count

            usage_ratio = self._pool_in_use_count / self._pool_max_connections
            if (
                usage_ratio >= POOL_USAGE_WARNING_THRESHOLD
                and not self._pool_usage_warning_emitted
            ):
                self._pool_usage_warning_emitted = True
                logger.warning(
                    "postgres_pool_usage_high",
                    in_use=self._pool_in_use_count,
                    max_connections=self._pool_max_connections,
                )

    def _register_connection_checkin(self) -> None:
        with self._pool_lock:
            if self._pool_in_use_count > 0:
                self._pool_in_use_count -= 1
            usage_ratio = self._pool_in_use_count / self._pool_max_connections
            if usage_ratio < POOL_USAGE_WARNING_THRESHOLD:
                self._pool_usage_warning_emitted = False

    def _release_connection(
        self, conn: extensions.connection, *, close: bool, reason: str | None
    ) -> None:
        """Return a connection to the pool and update usage counters."""
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning(
                "postgres_putconn_failed",
                database=self._database,
                close=close,
                reason=reason,
                exc_info=True,
            )
        finally:
            self._register_connection_checkin()
            if close and reason:
                logger.warning("postgres_connection_closed", reason=reason)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        with self._pool_lock:
            self._pool_in_use_count = 0
            self._pool_usage_warning_emitted = False
        logger.info(
            "postgres_pool_closed",
            database=self._database,
            high_watermark=self._pool_high_watermark,
        )

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection from the pool; roll back anything left open."""
        conn = self._acquire_connection_with_retry()
        conn.autocommit = False
        broken = False
        try:
            yield conn
        except PsycopgError as exc:
            broken = conn.closed != 0
            raise RepositoryError(f"PostgreSQL connection error: {exc}") from exc
        finally:
            try:
                if conn.closed == 0 and conn.get_transaction_status() in (
                    extensions.TRANSACTION_STATUS_INTRANS,
                    extensions.TRANSACTION_STATUS_INERROR,
                ):
                    conn.rollback()
            except PsycopgError:
                logger.warning(
                    "postgres_connection_cleanup_failed",
                    database=self._database,
                    exc_info=True,
                )
                broken = True
            self._release_connection(
                conn,
                close=broken or conn.closed != 0,
                reason="cleanup_error" if broken else None,
            )

    _connection_scope = _get_connection

    @contextmanager
    def _transaction(
        self, operation: str
    ) -> Iterator[tuple[extensions.connection, RealDictCursor]]:
        with self._get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield conn, cur
                conn.commit()
            except PsycopgError as exc:
                logger.error(
                    "postgres_transaction_failed",
                    operation=operation,
                    error=str(exc),
                )
                raise RepositoryError(f"Failed to {operation}: {exc}") from exc

    def _row_to_post(self, row: dict[str, Any]) -> Post:
        """Convert database row to Post (arrays and jsonb arrive decoded)."""
        return Post(
            uri=row["uri"],
            cid=row["cid"],
            author=row["author"],
            text=row["text"] or "",
            reply_parent=row.get("reply_parent"),
            reply_root=row.get("reply_root"),
            indexed_at=int(row["indexed_at"]),
            has_image=bool(row["has_image"]),
            embed=row.get("embed"),
            algo_tags=row.get("algo_tags") or [],
            labels=row.get("labels"),
            sort_weight=row.get("sort_weight"),
        )
