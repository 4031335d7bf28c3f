"""Backend-independent post repository logic.

Concrete repositories supply a transaction scope and row decoding; every
query and mutation path lives here so both backends share one set of
pagination and tag-GC semantics.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any

from src.adapters.bulk_persistence import (
    encode_bool,
    encode_json,
    encode_string_set,
    update_labels_bulk,
    upsert_posts_bulk,
)
from src.adapters.query_builders import (
    POST_COLUMNS,
    POST_TABLE,
    DatabaseBackend,
    PostOrder,
    PostQueryCriteria,
    in_clause,
    latest_per_author_select,
    reply_aggregate_select,
    strip_tag_expression,
    tag_membership_clause,
    untagged_clause,
)
from src.adapters.state_store import StateStore
from src.config.logging_config import get_logger
from src.domain.cursors import FeedCursor, WeightCursor
from src.domain.exceptions import MalformedCursorError, ValidationError
from src.domain.feed_constants import (
    DEFAULT_LABEL_LAG_TIME_MS,
    DEFAULT_PAGE_LIMIT,
    DEFAULT_RECENT_AUTHORS_WINDOW_MS,
    MAX_SQL_BIGINT,
    MUTUALS_AD_TAG,
    SQUEAKY_CLEAN_MAX_AGE_MS,
    SQUEAKY_CLEAN_TAG,
)
from src.domain.models import LabelUpdate, Post, PostPatch, ReplyAggregate

if TYPE_CHECKING:
    from src.config.settings import Settings

logger = get_logger(__name__)

Clock = Callable[[], int]

_PATCH_ENCODERS: dict[str, Callable[[Any, DatabaseBackend], Any]] = {
    "has_image": encode_bool,
    "embed": encode_json,
    "algo_tags": encode_string_set,
    "labels": encode_string_set,
}


def epoch_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SqlPostRepository(ABC):
    """Post repository over a DB-API connection.

    Subclasses provide ``_transaction`` (commit on success, rollback and
    RepositoryError on driver failure, connection released on every path),
    ``_connection_scope`` for the state store, and ``_row_to_post``.
    """

    backend: DatabaseBackend

    def __init__(
        self,
        settings: "Settings | None" = None,
        *,
        chunk_size: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._bulk_chunk_size = chunk_size or (
            settings.bulk_upsert_chunk_size if settings else 500
        )
        self._default_page_limit = (
            settings.default_page_limit if settings else DEFAULT_PAGE_LIMIT
        )
        self._max_page_limit = settings.max_page_limit if settings else 100
        self._recent_authors_window_ms = (
            settings.recent_authors_window_ms
            if settings
            else DEFAULT_RECENT_AUTHORS_WINDOW_MS
        )
        self._label_lag_time_ms = (
            settings.label_lag_time_ms if settings else DEFAULT_LABEL_LAG_TIME_MS
        )
        self._clock: Clock = clock or epoch_millis
        self._state_store: StateStore | None = None

    @abstractmethod
    def _transaction(self, operation: str) -> AbstractContextManager[tuple[Any, Any]]:
        """Yield ``(connection, cursor)`` for one unit of work."""

    @abstractmethod
    def _connection_scope(self) -> AbstractContextManager[Any]:
        """Yield a bare connection; the caller commits."""

    @abstractmethod
    def _row_to_post(self, row: Any) -> Post:
        """Convert a database row to a Post."""

    def close(self) -> None:
        """Release backend resources."""

    def state_store(self) -> StateStore:
        """Auxiliary state store sharing this repository's connections."""
        if self._state_store is None:
            self._state_store = StateStore(self._connection_scope)
        return self._state_store

    # --- writes ---------------------------------------------------------------

    def upsert_post(self, post: Post) -> None:
        """Insert ``post`` or replace every column of the row with its uri."""
        self.upsert_posts([post])

    def upsert_posts(self, posts: Sequence[Post]) -> int:
        """Upsert posts atomically: either every row applies or none does.

        Raises:
            RepositoryError: On storage errors (nothing is committed)
        """
        if not posts:
            return 0
        with self._transaction("upsert posts") as (conn, _):
            count = upsert_posts_bulk(
                conn, self.backend, posts, chunk=self._bulk_chunk_size
            )
        logger.info("posts_upserted", count=count, backend=self.backend.value)
        return count

    def update_post(self, uri: str, patch: PostPatch) -> bool:
        """Apply the fields set on ``patch`` to an existing post.

        Clearing every tag through a patch drops the post, like a tag strip.

        Returns:
            True if a post with ``uri`` existed
        """
        changes = patch.changes()
        if not changes:
            return self.get_post_for_uri(uri) is not None

        p = self.backend.placeholder
        assignments: list[str] = []
        params: list[Any] = []
        for column, value in changes.items():
            encoder = _PATCH_ENCODERS.get(column)
            assignments.append(f"{column} = {p}")
            params.append(encoder(value, self.backend) if encoder else value)
        params.append(uri)

        with self._transaction("update post") as (_, cur):
            cur.execute(
                f"UPDATE {POST_TABLE} SET {', '.join(assignments)} WHERE uri = {p}",
                params,
            )
            matched = cur.rowcount > 0
            if matched and changes.get("algo_tags") == []:
                self._delete_untagged(cur)
        return matched

    def update_labels_for_uris(self, entries: Sequence[LabelUpdate]) -> int:
        """Set label sets for many posts in one transaction."""
        if not entries:
            return 0
        with self._transaction("update labels") as (conn, _):
            count = update_labels_bulk(
                conn, self.backend, entries, chunk=self._bulk_chunk_size
            )
        logger.info("post_labels_updated", count=count)
        return count

    # --- reads ----------------------------------------------------------------

    def get_post_for_uri(self, uri: str) -> Post | None:
        p = self.backend.placeholder
        with self._transaction("read post") as (_, cur):
            cur.execute(
                f"SELECT {', '.join(POST_COLUMNS)} FROM {POST_TABLE} WHERE uri = {p}",
                (uri,),
            )
            row = cur.fetchone()
        return self._row_to_post(row) if row else None

    def get_latest_posts_for_tag(
        self,
        tag: str,
        limit: int | None = None,
        cursor: str | None = None,
        *,
        images_only: bool = False,
        nsfw_only: bool = False,
        exclude_nsfw: bool = False,
        authors: list[str] | None = None,
    ) -> list[Post]:
        """Page of posts tagged ``tag``, newest first (ties by cid descending).

        Raises:
            MalformedCursorError: If ``cursor`` is not ``"<indexedAt>::<cid>"``
        """
        criteria = PostQueryCriteria(
            tag=tag,
            images_only=images_only,
            nsfw_only=nsfw_only,
            exclude_nsfw=exclude_nsfw,
            authors=authors,
            after=FeedCursor.parse(cursor) if cursor is not None else None,
            limit=self._page_limit(limit),
        )
        return self._query(criteria, "read latest posts")

    def get_tagged_posts_between(self, tag: str, start: int, end: int) -> list[Post]:
        """Posts tagged ``tag`` strictly inside the (start, end) window.

        The bounds may be given in either order. The result is unbounded, so
        callers must keep the window small.
        """
        criteria = PostQueryCriteria(
            tag=tag,
            indexed_after=min(start, end),
            indexed_before=max(start, end),
        )
        return self._query(criteria, "read posts in window")

    def get_posts_by_sort_weight(
        self, tag: str, limit: int | None = None, cursor: str | None = None
    ) -> list[Post]:
        """Page of weighted posts tagged ``tag``, heaviest first.

        Posts without a sort_weight never appear here.

        Raises:
            MalformedCursorError: If ``cursor`` is not ``"<sortWeight>::<cid>"``
        """
        criteria = PostQueryCriteria(
            tag=tag,
            order=PostOrder.SORT_WEIGHT,
            weight_after=WeightCursor.parse(cursor) if cursor is not None else None,
            limit=self._page_limit(limit),
        )
        return self._query(criteria, "read weighted posts")

    def get_recent_authors_for_tag(
        self, tag: str, last_ms: int | None = None
    ) -> list[str]:
        """Distinct authors who posted ``tag`` within the last ``last_ms``."""
        window = self._recent_authors_window_ms if last_ms is None else last_ms
        since = self._clock() - window
        p = self.backend.placeholder
        with self._transaction("read recent authors") as (_, cur):
            cur.execute(
                f"SELECT DISTINCT author FROM {POST_TABLE} "
                f"WHERE indexed_at > {p} AND {tag_membership_clause(self.backend)}",
                (since, tag),
            )
            rows = cur.fetchall()
        return [row["author"] for row in rows]

    def get_latest_post_per_author_for_tag(
        self, tag: str, limit: int | None = None, cursor: str | None = None
    ) -> list[Post]:
        """Newest post of each author for ``tag``, paginated by recency.

        Raises:
            MalformedCursorError: If ``cursor`` is not ``"<indexedAt>::<cid>"``
        """
        after = FeedCursor.parse(cursor) if cursor is not None else None
        query, params = latest_per_author_select(
            self.backend, tag, self._page_limit(limit), after
        )
        with self._transaction("read latest post per author") as (_, cur):
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._row_to_post(row) for row in rows]

    def get_unlabelled_posts_with_media(
        self, limit: int, lag_time_ms: int | None = None
    ) -> list[Post]:
        """Labeling work queue: media posts never labeled, oldest first.

        Posts younger than ``lag_time_ms`` are held back so their media can
        settle before the labeler sees them.
        """
        lag = self._label_lag_time_ms if lag_time_ms is None else lag_time_ms
        page_limit = self._page_limit(limit)
        p = self.backend.placeholder
        with self._transaction("read unlabelled posts") as (_, cur):
            cur.execute(
                f"SELECT {', '.join(POST_COLUMNS)} FROM {POST_TABLE} "
                f"WHERE embed IS NOT NULL AND labels IS NULL AND indexed_at < {p} "
                f"ORDER BY indexed_at ASC, cid ASC LIMIT {p}",
                (self._clock() - lag, page_limit),
            )
            rows = cur.fetchall()
        return [self._row_to_post(row) for row in rows]

    def aggregate_posts_by_replies(
        self,
        tag: str,
        threshold: int = 0,
        limit: int = DEFAULT_PAGE_LIMIT,
        cursor: str | None = None,
    ) -> list[ReplyAggregate]:
        """Reply parents of ``tag`` posts with more than ``threshold`` replies.

        Ordered by reply count descending. ``cursor`` is a plain row offset.

        Raises:
            MalformedCursorError: If ``cursor`` is not a non-negative integer
        """
        offset = 0
        if cursor is not None:
            if not (
                isinstance(cursor, str) and cursor.isascii() and cursor.isdigit()
            ) or int(cursor) > MAX_SQL_BIGINT:
                raise MalformedCursorError(cursor)
            offset = int(cursor)
        query, params = reply_aggregate_select(
            self.backend, tag, threshold, self._page_limit(limit), offset
        )
        with self._transaction("aggregate replies") as (_, cur):
            cur.execute(query, params)
            rows = cur.fetchall()
        return [
            ReplyAggregate(uri=row["uri"], count=int(row["reply_count"]))
            for row in rows
        ]

    def aggregate_posts_by_replies_to_collection(
        self,
        tag: str,
        threshold: int,
        out: str,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> list[ReplyAggregate]:
        """Run the reply aggregation and store it as collection record ``out``."""
        if not out:
            raise ValidationError("output collection key must not be empty")
        aggregates = self.aggregate_posts_by_replies(tag, threshold, limit)
        self.state_store().insert_or_replace_record(
            out, [aggregate.model_dump() for aggregate in aggregates]
        )
        logger.info(
            "reply_aggregates_materialized",
            tag=tag,
            out=out,
            count=len(aggregates),
        )
        return aggregates

    # --- tag removal and deletes ---------------------------------------------

    def remove_tag_from_posts_for_author(self, tag: str, authors: list[str]) -> int:
        """Strip ``tag`` from the authors' posts, then drop untagged posts.

        Returns:
            Number of posts garbage-collected
        """
        if not authors:
            return 0
        author_clause, author_params = in_clause(self.backend, "author", authors)
        return self._strip_tag(tag, author_clause, author_params, reason="author")

    def remove_tag_from_old_posts(self, tag: str, indexed_at: int) -> int:
        """Strip ``tag`` from posts indexed before ``indexed_at``, then GC.

        Returns:
            Number of posts garbage-collected
        """
        p = self.backend.placeholder
        return self._strip_tag(tag, f"indexed_at < {p}", [indexed_at], reason="age")

    def delete_untagged_posts(self) -> int:
        """Delete every post whose tag set is empty (idempotent)."""
        with self._transaction("delete untagged posts") as (_, cur):
            deleted = self._delete_untagged(cur)
        return deleted

    def delete_many_uri(self, uris: list[str]) -> int:
        """Delete posts whose uri is in ``uris``."""
        if not uris:
            return 0
        clause, params = in_clause(self.backend, "uri", uris)
        with self._transaction("delete posts by uri") as (_, cur):
            cur.execute(f"DELETE FROM {POST_TABLE} WHERE {clause}", params)
            deleted = cur.rowcount
        logger.info("posts_deleted", requested=len(uris), deleted=deleted)
        return deleted

    def delete_squeaky_clean_posts(self) -> int:
        """Delete stale squeaky-clean posts that are not mutuals ads."""
        p = self.backend.placeholder
        membership = tag_membership_clause(self.backend)
        with self._transaction("delete squeaky clean posts") as (_, cur):
            cur.execute(
                f"DELETE FROM {POST_TABLE} WHERE {membership} "
                f"AND NOT {membership} AND indexed_at < {p}",
                (
                    SQUEAKY_CLEAN_TAG,
                    MUTUALS_AD_TAG,
                    self._clock() - SQUEAKY_CLEAN_MAX_AGE_MS,
                ),
            )
            deleted = cur.rowcount
        logger.info("squeaky_clean_posts_deleted", deleted=deleted)
        return deleted

    # --- helpers --------------------------------------------------------------

    def _strip_tag(
        self, tag: str, match_clause: str, match_params: list[Any], *, reason: str
    ) -> int:
        # Strip and GC share one transaction, so no reader sees an untagged post.
        membership = tag_membership_clause(self.backend)
        with self._transaction("remove tag") as (_, cur):
            cur.execute(
                f"UPDATE {POST_TABLE} SET algo_tags = {strip_tag_expression(self.backend)} "
                f"WHERE {match_clause} AND {membership}",
                [tag, *match_params, tag],
            )
            stripped = cur.rowcount
            deleted = self._delete_untagged(cur)
        logger.info(
            "post_tag_removed",
            tag=tag,
            reason=reason,
            stripped=stripped,
            garbage_collected=deleted,
        )
        return deleted

    def _delete_untagged(self, cur: Any) -> int:
        cur.execute(f"DELETE FROM {POST_TABLE} WHERE {untagged_clause(self.backend)}")
        return int(cur.rowcount)

    def _query(self, criteria: PostQueryCriteria, operation: str) -> list[Post]:
        query, params = criteria.to_select(self.backend)
        with self._transaction(operation) as (_, cur):
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._row_to_post(row) for row in rows]

    def _page_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._default_page_limit
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")
        return min(limit, self._max_page_limit)
