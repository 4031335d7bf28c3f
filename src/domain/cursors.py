"""Opaque pagination cursors.

A cursor encodes the sort key of the last row of a page as
``"<sort key>::<cid>"``. The next page starts strictly after that row.
"""

import math
from dataclasses import dataclass

from src.domain.exceptions import MalformedCursorError
from src.domain.feed_constants import CURSOR_SEPARATOR, MAX_SQL_BIGINT
from src.domain.models import Post


def _split(cursor: object) -> tuple[str, str]:
    if not isinstance(cursor, str):
        raise MalformedCursorError(cursor)
    parts = cursor.split(CURSOR_SEPARATOR)
    if len(parts) != 2:
        raise MalformedCursorError(cursor)
    key, cid = parts
    if not key or not cid:
        raise MalformedCursorError(cursor)
    return key, cid


@dataclass(frozen=True)
class FeedCursor:
    """Position in the (indexed_at DESC, cid DESC) order."""

    indexed_at: int
    cid: str

    @classmethod
    def parse(cls, cursor: object) -> "FeedCursor":
        """Parse ``"<indexedAt>::<cid>"``.

        Raises:
            MalformedCursorError: If a component is missing or the
                timestamp is not a BIGINT-sized integer
        """
        key, cid = _split(cursor)
        if not (key.isascii() and key.isdigit()) or int(key) > MAX_SQL_BIGINT:
            raise MalformedCursorError(cursor)
        return cls(indexed_at=int(key), cid=cid)

    @classmethod
    def from_post(cls, post: Post) -> "FeedCursor":
        return cls(indexed_at=post.indexed_at, cid=post.cid)

    def encode(self) -> str:
        return f"{self.indexed_at}{CURSOR_SEPARATOR}{self.cid}"


@dataclass(frozen=True)
class WeightCursor:
    """Position in the (sort_weight DESC, cid DESC) order."""

    sort_weight: float
    cid: str

    @classmethod
    def parse(cls, cursor: object) -> "WeightCursor":
        """Parse ``"<sortWeight>::<cid>"``.

        Raises:
            MalformedCursorError: If a component is missing or the weight
                is not a finite number
        """
        key, cid = _split(cursor)
        try:
            weight = float(key)
        except ValueError as exc:
            raise MalformedCursorError(cursor) from exc
        if not math.isfinite(weight):
            raise MalformedCursorError(cursor)
        return cls(sort_weight=weight, cid=cid)

    @classmethod
    def from_post(cls, post: Post) -> "WeightCursor":
        if post.sort_weight is None:
            raise ValueError("post has no sort_weight")
        return cls(sort_weight=post.sort_weight, cid=post.cid)

    def encode(self) -> str:
        return f"{self.sort_weight!r}{CURSOR_SEPARATOR}{self.cid}"


def next_feed_cursor(posts: list[Post]) -> str | None:
    """Cursor for the page after ``posts`` (None when the page is empty)."""
    if not posts:
        return None
    return FeedCursor.from_post(posts[-1]).encode()


def next_weight_cursor(posts: list[Post]) -> str | None:
    """Cursor for the sort-weight page after ``posts``."""
    if not posts:
        return None
    return WeightCursor.from_post(posts[-1]).encode()
