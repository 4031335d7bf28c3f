"""Factory for creating post repository instances."""

from typing import cast

from src.adapters.sqlite_repository import SQLiteRepository
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.protocols import PostRepositoryProtocol

logger = get_logger(__name__)


def create_repository(settings: Settings) -> PostRepositoryProtocol:
    """Create the repository selected by ``settings.database_type``.

    The caller owns the returned object and passes it to collaborators;
    call ``close()`` on shutdown.

    Raises:
        ValueError: If database_type is not supported or the password is missing
        RepositoryError: On connection errors
    """
    if settings.database_type == "sqlite":
        logger.info("repository_sqlite_selected", path=settings.db_path)
        return cast(
            PostRepositoryProtocol,
            SQLiteRepository(db_path=settings.db_path, settings=settings),
        )

    elif settings.database_type == "postgres":
        from src.adapters.postgres_repository import PostgresRepository

        if not settings.postgres_password:
            raise ValueError(
                "POSTGRES_PASSWORD environment variable must be set when using PostgreSQL"
            )

        logger.info(
            "repository_postgres_selected",
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
        )
        return cast(
            PostRepositoryProtocol,
            PostgresRepository(
                host=settings.postgres_host,
                port=settings.postgres_port,
                database=settings.postgres_database,
                user=settings.postgres_user,
                password=settings.postgres_password.get_secret_value(),
                settings=settings,
            ),
        )

    else:
        raise ValueError(
            f"Unsupported database type: {settings.database_type}. "
            f"Must be 'sqlite' or 'postgres'"
        )
