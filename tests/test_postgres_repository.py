"""Tests for the PostgreSQL repository's pooling and transaction handling.

The pool is mocked; behavioral tests against a live database run through
the ``repo`` fixture (see conftest) when TEST_POSTGRES=1 is set.
"""

from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool

from src.adapters.postgres_repository import PostgresRepository
from src.config.settings import Settings
from src.domain.exceptions import RepositoryError
from src.domain.models import Post


@pytest.fixture
def conn() -> MagicMock:
    connection = MagicMock()
    connection.closed = 0
    connection.get_transaction_status.return_value = (
        extensions.TRANSACTION_STATUS_IDLE
    )
    return connection


@pytest.fixture
def cursor(conn: MagicMock) -> MagicMock:
    cur = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    return cur


@pytest.fixture
def pool(mocker, conn: MagicMock) -> MagicMock:
    pool_instance = MagicMock()
    pool_instance.getconn.return_value = conn
    mocker.patch(
        "src.adapters.postgres_repository.psycopg2_pool.ThreadedConnectionPool",
        return_value=pool_instance,
    )
    return pool_instance


@pytest.fixture
def pg_repo(pool: MagicMock, conn: MagicMock, cursor: MagicMock) -> PostgresRepository:
    repository = PostgresRepository(
        host="localhost",
        port=5432,
        database="feed_store",
        user="postgres",
        password="secret",
    )
    # Forget the validation query issued while building the pool
    pool.reset_mock()
    conn.reset_mock()
    cursor.reset_mock()
    return repository


def test_pool_validated_on_startup(pool: MagicMock, conn: MagicMock, cursor) -> None:
    PostgresRepository("localhost", 5432, "feed_store", "postgres", "secret")

    cursor.execute.assert_called_once_with("SELECT 1")
    pool.putconn.assert_called_once_with(conn)


def test_pool_init_failure_raises_repository_error(mocker) -> None:
    mocker.patch(
        "src.adapters.postgres_repository.psycopg2_pool.ThreadedConnectionPool",
        side_effect=psycopg2.OperationalError("connection refused"),
    )

    with pytest.raises(RepositoryError):
        PostgresRepository("localhost", 5432, "feed_store", "postgres", "secret")


def test_invalid_pool_bounds_rejected(pool: MagicMock) -> None:
    settings = Settings().model_copy(
        update={"postgres_min_connections": 5, "postgres_max_connections": 2}
    )

    with pytest.raises(RepositoryError):
        PostgresRepository(
            "localhost", 5432, "feed_store", "postgres", "secret", settings=settings
        )

    pool.getconn.assert_not_called()


def test_successful_read_commits_and_releases(
    pg_repo: PostgresRepository, pool: MagicMock, conn: MagicMock, cursor: MagicMock
) -> None:
    cursor.fetchone.return_value = None

    assert pg_repo.get_post_for_uri("at://missing") is None

    conn.commit.assert_called_once()
    pool.putconn.assert_called_once_with(conn, close=False)
    assert pg_repo._pool_in_use_count == 0


def test_failed_statement_rolls_back_and_releases(
    pg_repo: PostgresRepository, pool: MagicMock, conn: MagicMock, cursor: MagicMock
) -> None:
    cursor.execute.side_effect = psycopg2.OperationalError("statement timeout")
    conn.get_transaction_status.return_value = extensions.TRANSACTION_STATUS_INERROR

    with pytest.raises(RepositoryError):
        pg_repo.get_latest_posts_for_tag("news")

    conn.commit.assert_not_called()
    conn.rollback.assert_called_once()
    pool.putconn.assert_called_once_with(conn, close=False)


def test_broken_connection_is_closed(
    pg_repo: PostgresRepository, pool: MagicMock, conn: MagicMock, cursor: MagicMock
) -> None:
    cursor.execute.side_effect = psycopg2.InterfaceError("connection already closed")
    conn.closed = 2

    with pytest.raises(RepositoryError):
        pg_repo.delete_untagged_posts()

    conn.rollback.assert_not_called()
    pool.putconn.assert_called_once_with(conn, close=True)


def test_pool_exhaustion_retries_with_backoff(
    mocker, pg_repo: PostgresRepository, pool: MagicMock, conn: MagicMock, cursor
) -> None:
    sleep = mocker.patch("src.adapters.postgres_repository.sleep")
    pool.getconn.side_effect = [psycopg2_pool.PoolError("exhausted"), conn]
    cursor.fetchall.return_value = []

    assert pg_repo.get_recent_authors_for_tag("news") == []

    assert pool.getconn.call_count == 2
    sleep.assert_called_once()


def test_pool_exhaustion_gives_up(
    mocker, pg_repo: PostgresRepository, pool: MagicMock
) -> None:
    sleep = mocker.patch("src.adapters.postgres_repository.sleep")
    pool.getconn.side_effect = psycopg2_pool.PoolError("exhausted")

    with pytest.raises(RepositoryError):
        pg_repo.get_post_for_uri("at://a")

    assert pool.getconn.call_count == 5
    assert sleep.call_count == 4
    pool.putconn.assert_not_called()


def test_upsert_uses_execute_batch(
    mocker, pg_repo: PostgresRepository, conn: MagicMock
) -> None:
    execute_batch = mocker.patch("src.adapters.bulk_persistence.execute_batch")
    posts = [
        Post(uri=f"at://p/{i}", cid=f"c{i}", author="did:a", indexed_at=i)
        for i in range(3)
    ]

    assert pg_repo.upsert_posts(posts) == 3

    execute_batch.assert_called_once()
    _, sql, values = execute_batch.call_args.args
    assert "ON CONFLICT (uri) DO UPDATE" in sql
    assert [row[0] for row in values] == ["at://p/0", "at://p/1", "at://p/2"]
    assert execute_batch.call_args.kwargs == {"page_size": 500}
    conn.commit.assert_called_once()


def test_row_to_post_handles_decoded_columns(pg_repo: PostgresRepository) -> None:
    post = pg_repo._row_to_post(
        {
            "uri": "at://a",
            "cid": "c",
            "author": "did:a",
            "text": None,
            "reply_parent": None,
            "reply_root": None,
            "indexed_at": 5,
            "has_image": True,
            "embed": {"images": []},
            "algo_tags": None,
            "labels": ["porn"],
            "sort_weight": 1.0,
        }
    )

    assert post.text == ""
    assert post.algo_tags == []
    assert post.embed == {"images": []}
    assert post.labels == ["porn"]


def test_close_closes_pool(pg_repo: PostgresRepository, pool: MagicMock) -> None:
    pg_repo.close()

    pool.closeall.assert_called_once()
