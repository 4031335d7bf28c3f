"""Query builders for post queries.

Instead of assembling SQL WHERE clauses inline in each repository, the
criteria below render dialect-specific SQL for both backends. PostgreSQL
stores tags and labels as ``text[]``; SQLite stores them as JSON arrays
and tests membership through ``json_each``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from src.domain.cursors import FeedCursor, WeightCursor
from src.domain.feed_constants import NSFW_LABELS

POST_TABLE = "post"

POST_COLUMNS: tuple[str, ...] = (
    "uri",
    "cid",
    "author",
    "text",
    "reply_parent",
    "reply_root",
    "indexed_at",
    "has_image",
    "embed",
    "algo_tags",
    "labels",
    "sort_weight",
)


class DatabaseBackend(StrEnum):
    """Supported database backends."""

    POSTGRES = "postgres"
    SQLITE = "sqlite"

    @property
    def placeholder(self) -> str:
        return "%s" if self is DatabaseBackend.POSTGRES else "?"

    def placeholders(self, count: int) -> str:
        return ", ".join([self.placeholder] * count)


class PostOrder(StrEnum):
    """Total orders used for pagination."""

    RECENT = "recent"
    SORT_WEIGHT = "sort_weight"

    def to_order_clause(self) -> str:
        if self is PostOrder.SORT_WEIGHT:
            return "sort_weight DESC, cid DESC"
        return "indexed_at DESC, cid DESC"


def tag_membership_clause(
    backend: DatabaseBackend, column: str = "algo_tags"
) -> str:
    """SQL testing that the bound parameter is an element of ``column``."""
    if backend is DatabaseBackend.POSTGRES:
        return f"{column} @> ARRAY[%s]::text[]"
    return (
        f"EXISTS (SELECT 1 FROM json_each({POST_TABLE}.{column}) "
        "WHERE json_each.value = ?)"
    )


def labels_intersect_clause(
    backend: DatabaseBackend, labels: list[str]
) -> tuple[str, list[Any]]:
    """SQL that is true when ``labels`` shares an element with the given set."""
    if backend is DatabaseBackend.POSTGRES:
        return "labels && %s::text[]", [labels]
    return (
        f"EXISTS (SELECT 1 FROM json_each({POST_TABLE}.labels) "
        f"WHERE json_each.value IN ({backend.placeholders(len(labels))}))",
        list(labels),
    )


def in_clause(
    backend: DatabaseBackend, column: str, values: list[Any]
) -> tuple[str, list[Any]]:
    """Membership test of ``column`` against a non-empty list of values."""
    if backend is DatabaseBackend.POSTGRES:
        return f"{column} = ANY(%s)", [list(values)]
    return f"{column} IN ({backend.placeholders(len(values))})", list(values)


def strip_tag_expression(backend: DatabaseBackend) -> str:
    """SET expression removing the bound tag from ``algo_tags``."""
    if backend is DatabaseBackend.POSTGRES:
        return "array_remove(algo_tags, %s)"
    return (
        f"(SELECT json_group_array(json_each.value) "
        f"FROM json_each({POST_TABLE}.algo_tags) WHERE json_each.value != ?)"
    )


def untagged_clause(backend: DatabaseBackend) -> str:
    """WHERE clause matching posts that carry no tags."""
    if backend is DatabaseBackend.POSTGRES:
        return "algo_tags IS NULL OR cardinality(algo_tags) = 0"
    return "algo_tags IS NULL OR json_array_length(algo_tags) = 0"


class BaseQueryCriteria(ABC):
    """Base class for database query criteria with dialect support."""

    @abstractmethod
    def to_where_clause(self, backend: DatabaseBackend) -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters."""
        pass

    @abstractmethod
    def to_order_clause(self) -> str:
        """Build SQL ORDER BY clause."""
        pass

    @abstractmethod
    def to_limit_clause(self, backend: DatabaseBackend) -> tuple[str, list[Any]]:
        """Build SQL LIMIT clause."""
        pass


@dataclass
class PostQueryCriteria(BaseQueryCriteria):
    """Criteria for querying the post table.

    All filters combine with AND. ``nsfw_only`` and ``exclude_nsfw`` are not
    mutually exclusive; setting both yields their conjunction.

    Example:
        >>> criteria = PostQueryCriteria(tag="news", limit=2)
        >>> where, params = criteria.to_where_clause(DatabaseBackend.POSTGRES)
        >>> where
        'algo_tags @> ARRAY[%s]::text[]'
        >>> params
        ['news']
    """

    tag: str | None = None
    """Exact tag that must be present in algo_tags"""

    images_only: bool = False
    """Only posts with has_image set"""

    nsfw_only: bool = False
    """Only posts carrying at least one NSFW label"""

    exclude_nsfw: bool = False
    """Only posts without NSFW labels (unlabeled posts pass)"""

    authors: list[str] | None = None
    """Author allow-list; None disables the filter, [] matches nothing"""

    after: FeedCursor | None = None
    """Start strictly after this (indexed_at, cid) position"""

    weight_after: WeightCursor | None = None
    """Start strictly after this (sort_weight, cid) position"""

    indexed_after: int | None = None
    """Exclusive lower bound on indexed_at"""

    indexed_before: int | None = None
    """Exclusive upper bound on indexed_at"""

    order: PostOrder = PostOrder.RECENT
    """Total order of the result"""

    limit: int | None = None
    """Maximum number of results"""

    nsfw_labels: list[str] = field(default_factory=lambda: sorted(NSFW_LABELS))

    def to_where_clause(self, backend: DatabaseBackend) -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters.

        Returns:
            Tuple of (where_clause, parameters)
        """
        p = backend.placeholder
        conditions: list[str] = []
        params: list[Any] = []

        if self.tag is not None:
            conditions.append(tag_membership_clause(backend))
            params.append(self.tag)

        if self.images_only:
            conditions.append(
                "has_image = TRUE"
                if backend is DatabaseBackend.POSTGRES
                else "has_image = 1"
            )

        if self.nsfw_only:
            clause, clause_params = labels_intersect_clause(backend, self.nsfw_labels)
            conditions.append(clause)
            params.extend(clause_params)

        if self.exclude_nsfw:
            clause, clause_params = labels_intersect_clause(backend, self.nsfw_labels)
            conditions.append(f"(labels IS NULL OR NOT {clause})")
            params.extend(clause_params)

        if self.authors is not None:
            if not self.authors:
                conditions.append("1=0")
            else:
                clause, clause_params = in_clause(backend, "author", self.authors)
                conditions.append(clause)
                params.extend(clause_params)

        if self.indexed_after is not None:
            conditions.append(f"indexed_at > {p}")
            params.append(self.indexed_after)

        if self.indexed_before is not None:
            conditions.append(f"indexed_at < {p}")
            params.append(self.indexed_before)

        if self.order is PostOrder.SORT_WEIGHT:
            conditions.append("sort_weight IS NOT NULL")

        if self.after is not None:
            conditions.append(f"(indexed_at < {p} OR (indexed_at = {p} AND cid < {p}))")
            params.extend([self.after.indexed_at, self.after.indexed_at, self.after.cid])

        if self.weight_after is not None:
            conditions.append(
                f"(sort_weight < {p} OR (sort_weight = {p} AND cid < {p}))"
            )
            params.extend(
                [
                    self.weight_after.sort_weight,
                    self.weight_after.sort_weight,
                    self.weight_after.cid,
                ]
            )

        where = " AND ".join(conditions) if conditions else "1=1"
        return where, params

    def to_order_clause(self) -> str:
        """Build SQL ORDER BY clause.

        Example:
            >>> PostQueryCriteria(order=PostOrder.SORT_WEIGHT).to_order_clause()
            'sort_weight DESC, cid DESC'
        """
        return self.order.to_order_clause()

    def to_limit_clause(self, backend: DatabaseBackend) -> tuple[str, list[Any]]:
        """Build SQL LIMIT clause."""
        if self.limit is None:
            return "", []
        return f"LIMIT {backend.placeholder}", [self.limit]

    def to_select(self, backend: DatabaseBackend) -> tuple[str, list[Any]]:
        """Render the complete SELECT statement."""
        where, params = self.to_where_clause(backend)
        limit, limit_params = self.to_limit_clause(backend)
        query = (
            f"SELECT {', '.join(POST_COLUMNS)} FROM {POST_TABLE} "
            f"WHERE {where} ORDER BY {self.to_order_clause()} {limit}"
        )
        return query.strip(), params + limit_params


def latest_per_author_select(
    backend: DatabaseBackend,
    tag: str,
    limit: int,
    after: FeedCursor | None,
) -> tuple[str, list[Any]]:
    """Newest post per author for ``tag``, paginated in the recency order.

    The per-author pick happens before the cursor is applied, so pages stay
    stable while the cursor advances.
    """
    p = backend.placeholder
    columns = ", ".join(POST_COLUMNS)
    params: list[Any] = [tag]
    cursor_clause = ""
    if after is not None:
        cursor_clause = f"AND (indexed_at < {p} OR (indexed_at = {p} AND cid < {p}))"
        params.extend([after.indexed_at, after.indexed_at, after.cid])
    params.append(limit)
    query = f"""
        SELECT {columns} FROM (
            SELECT {columns}, ROW_NUMBER() OVER (
                PARTITION BY author ORDER BY indexed_at DESC, cid DESC
            ) AS author_rank
            FROM {POST_TABLE}
            WHERE {tag_membership_clause(backend)}
        ) AS ranked
        WHERE author_rank = 1 {cursor_clause}
        ORDER BY indexed_at DESC, cid DESC
        LIMIT {p}
    """
    return query, params


def reply_aggregate_select(
    backend: DatabaseBackend,
    tag: str,
    threshold: int,
    limit: int,
    offset: int,
) -> tuple[str, list[Any]]:
    """Reply counts per parent for posts tagged ``tag`` above ``threshold``."""
    p = backend.placeholder
    query = f"""
        SELECT reply_parent AS uri, COUNT(*) AS reply_count
        FROM {POST_TABLE}
        WHERE reply_parent IS NOT NULL AND {tag_membership_clause(backend)}
        GROUP BY reply_parent
        HAVING COUNT(*) > {p}
        ORDER BY reply_count DESC, reply_parent DESC
        LIMIT {p} OFFSET {p}
    """
    return query, [tag, threshold, limit, offset]
