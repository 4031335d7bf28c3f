"""Bulk persistence helpers for batched post upserts and label writes."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from psycopg2 import extensions
from psycopg2.extras import Json, execute_batch

from src.adapters.query_builders import POST_COLUMNS, POST_TABLE, DatabaseBackend
from src.domain.models import LabelUpdate, Post

_UPDATE_COLUMNS: tuple[str, ...] = tuple(c for c in POST_COLUMNS if c != "uri")


def encode_string_set(
    values: list[str] | None, backend: DatabaseBackend
) -> list[str] | str | None:
    """Serialize a tag/label set for the given backend."""
    if values is None:
        return None
    if backend is DatabaseBackend.POSTGRES:
        return list(values)
    return json.dumps(values)


def encode_json(value: Any, backend: DatabaseBackend) -> Json | str | None:
    """Serialize a JSON payload for the given backend."""
    if value is None:
        return None
    if backend is DatabaseBackend.POSTGRES:
        return Json(value)
    return json.dumps(value)


def encode_bool(value: bool, backend: DatabaseBackend) -> bool | int:
    if backend is DatabaseBackend.SQLITE:
        return 1 if value else 0
    return value


@dataclass(slots=True)
class PostDTO:
    """Serializable post payload for bulk upserts."""

    backend: DatabaseBackend
    values: tuple[Any, ...]

    @classmethod
    def from_post(cls, post: Post, *, backend: DatabaseBackend) -> PostDTO:
        """Build DTO from domain post (column order matches POST_COLUMNS)."""
        values = (
            post.uri,
            post.cid,
            post.author,
            post.text,
            post.reply_parent,
            post.reply_root,
            post.indexed_at,
            encode_bool(post.has_image, backend),
            encode_json(post.embed, backend),
            encode_string_set(post.algo_tags, backend),
            encode_string_set(post.labels, backend),
            post.sort_weight,
        )
        return cls(backend=backend, values=values)


def build_upsert_sql(backend: DatabaseBackend) -> str:
    """INSERT ... ON CONFLICT (uri) statement replacing every column."""
    assignments = ", ".join(f"{col} = excluded.{col}" for col in _UPDATE_COLUMNS)
    return (
        f"INSERT INTO {POST_TABLE} ({', '.join(POST_COLUMNS)}) "
        f"VALUES ({backend.placeholders(len(POST_COLUMNS))}) "
        f"ON CONFLICT (uri) DO UPDATE SET {assignments}"
    )


def upsert_posts_bulk(
    connection: extensions.connection | sqlite3.Connection,
    backend: DatabaseBackend,
    posts: Sequence[Post],
    *,
    chunk: int = 500,
) -> int:
    """Persist posts using batched upserts.

    The caller owns the transaction; nothing is committed here.

    Returns:
        Number of posts written
    """
    if not posts:
        return 0
    if chunk <= 0:
        raise ValueError("chunk must be positive")

    values = [PostDTO.from_post(post, backend=backend).values for post in posts]
    sql = build_upsert_sql(backend)

    if backend is DatabaseBackend.POSTGRES:
        with connection.cursor() as cur:  # type: ignore[union-attr]
            execute_batch(cur, sql, values, page_size=chunk)
    elif backend is DatabaseBackend.SQLITE:
        cursor = connection.cursor()
        try:
            for start in range(0, len(values), chunk):
                cursor.executemany(sql, values[start : start + chunk])
        finally:
            cursor.close()
    else:  # pragma: no cover - defensive
        raise ValueError(f"Unsupported backend: {backend}")

    return len(values)


def update_labels_bulk(
    connection: extensions.connection | sqlite3.Connection,
    backend: DatabaseBackend,
    entries: Sequence[LabelUpdate],
    *,
    chunk: int = 500,
) -> int:
    """Assign label sets to posts; the caller owns the transaction.

    Returns:
        Number of label updates issued
    """
    if not entries:
        return 0
    if chunk <= 0:
        raise ValueError("chunk must be positive")

    p = backend.placeholder
    sql = f"UPDATE {POST_TABLE} SET labels = {p} WHERE uri = {p}"
    values = [
        (encode_string_set(entry.labels, backend), entry.uri) for entry in entries
    ]

    if backend is DatabaseBackend.POSTGRES:
        with connection.cursor() as cur:  # type: ignore[union-attr]
            execute_batch(cur, sql, values, page_size=chunk)
    elif backend is DatabaseBackend.SQLITE:
        cursor = connection.cursor()
        try:
            for start in range(0, len(values), chunk):
                cursor.executemany(sql, values[start : start + chunk])
        finally:
            cursor.close()
    else:  # pragma: no cover - defensive
        raise ValueError(f"Unsupported backend: {backend}")

    return len(values)
