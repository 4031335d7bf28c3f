"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from src.adapters.post_repository_base import SqlPostRepository
from src.adapters.sqlite_repository import SQLiteRepository
from src.config.settings import Settings
from src.domain.models import Post

NOW_MS = 1_700_000_000_000

POSTGRES_TEST_DATABASE = "feed_store_test"
POSTGRES_TABLES = ("post", "sub_state", "list_members", "collection", "alembic_version")


class FakeClock:
    """Settable epoch-millis clock."""

    def __init__(self, now_ms: int = NOW_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings().model_copy(
        update={
            "database_type": "sqlite",
            "db_path": str(tmp_path / "db" / "test.sqlite"),
            "default_page_limit": 50,
            "max_page_limit": 100,
        }
    )


def _drop_postgres_tables(repository: Any) -> None:
    with repository._get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "DROP TABLE IF EXISTS "
                + ", ".join(POSTGRES_TABLES)
                + " CASCADE"
            )
        conn.commit()


def _create_postgres_repository(settings: Settings, clock: FakeClock) -> Any:
    """Connect to the PostgreSQL test database and migrate it to head."""
    if os.environ.get("TEST_POSTGRES", "0") != "1":
        pytest.skip("TEST_POSTGRES=1 not set - skipping PostgreSQL tests")
    password = os.environ.get("POSTGRES_PASSWORD")
    if not password:
        pytest.skip("POSTGRES_PASSWORD not set - skipping PostgreSQL tests")

    from src.adapters.postgres_repository import PostgresRepository

    repository = PostgresRepository(
        host=os.environ.get("POSTGRES_HOST", "localhost"),
        port=int(os.environ.get("POSTGRES_PORT", "5432")),
        database=POSTGRES_TEST_DATABASE,
        user=os.environ.get("POSTGRES_USER", "postgres"),
        password=password,
        settings=settings,
        clock=clock,
    )
    _drop_postgres_tables(repository)
    subprocess.run(
        ["alembic", "upgrade", "head"],
        check=True,
        capture_output=True,
        env={**os.environ, "POSTGRES_DATABASE": POSTGRES_TEST_DATABASE},
    )
    return repository


@pytest.fixture(
    params=["sqlite", pytest.param("postgres", marks=pytest.mark.postgres)]
)
def repo(
    request: pytest.FixtureRequest, settings: Settings, clock: FakeClock
) -> Generator[SqlPostRepository, None, None]:
    """Repository for each backend; PostgreSQL is skipped unless enabled."""
    if request.param == "postgres":
        repository = _create_postgres_repository(settings, clock)
    else:
        repository = SQLiteRepository(
            db_path=settings.db_path, settings=settings, clock=clock
        )

    try:
        yield repository
    finally:
        if request.param == "postgres":
            _drop_postgres_tables(repository)
        repository.close()


@pytest.fixture
def sqlite_repo(
    settings: Settings, clock: FakeClock
) -> Generator[SQLiteRepository, None, None]:
    """SQLite repository only (for tests that poke at SQLite internals)."""
    repository = SQLiteRepository(db_path=settings.db_path, settings=settings, clock=clock)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture
def make_post() -> Callable[..., Post]:
    """Factory for posts with sensible defaults."""

    def _make(uri: str, **overrides: Any) -> Post:
        fields: dict[str, Any] = {
            "uri": uri,
            "cid": f"cid-{uri}",
            "author": "did:plc:alice",
            "text": f"text of {uri}",
            "indexed_at": NOW_MS - 60_000,
            "algo_tags": ["news"],
        }
        fields.update(overrides)
        return Post(**fields)

    return _make
