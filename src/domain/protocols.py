"""Protocol definitions for dependency inversion.

Serving handlers, ingestion and labeling jobs depend on these contracts,
never on a concrete storage adapter.
"""

from collections.abc import Sequence
from typing import Any, Protocol

from src.domain.models import (
    CollectionRecord,
    LabelUpdate,
    Post,
    PostPatch,
    ReplyAggregate,
    SubState,
)


class StateStoreProtocol(Protocol):
    """Subscription cursors, collection records and list members."""

    def get_sub_state_cursor(self, service: str) -> SubState | None:
        """Load the persisted stream position for a service."""
        ...

    def update_sub_state_cursor(self, service: str, cursor_value: int) -> None:
        """Persist the stream position for a service."""
        ...

    def get_collection(self, key: str) -> CollectionRecord | None:
        """Load a collection record."""
        ...

    def list_collection(self) -> list[CollectionRecord]:
        """Load all collection records."""
        ...

    def insert_or_replace_record(self, key: str, value: Any) -> None:
        """Write a collection record (last write wins)."""
        ...

    def replace_many_records(self, records: list[CollectionRecord]) -> int:
        """Write several collection records atomically."""
        ...

    def delete_record(self, key: str) -> bool:
        """Delete a collection record."""
        ...

    def upsert_list_member(self, did: str, data: dict[str, Any] | None = None) -> Any:
        """Insert or replace a list member."""
        ...

    def get_list_members(self) -> list[str]:
        """Return member DIDs."""
        ...

    def delete_many_did(self, dids: list[str]) -> int:
        """Delete list members by DID."""
        ...

    def get_distinct_from_collection(self, table: str, field: str) -> list[Any]:
        """Distinct values of a column."""
        ...


class PostRepositoryProtocol(Protocol):
    """Contract of the post store.

    Every method raises RepositoryError on storage failure after rolling
    back its unit of work. Cursor-accepting methods raise
    MalformedCursorError for unparseable cursors.
    """

    def close(self) -> None:
        """Release connections."""
        ...

    def state_store(self) -> StateStoreProtocol:
        """Auxiliary state store sharing the same connections."""
        ...

    def upsert_post(self, post: Post) -> None:
        """Insert or fully replace a post by uri."""
        ...

    def upsert_posts(self, posts: Sequence[Post]) -> int:
        """Upsert posts in one all-or-nothing transaction."""
        ...

    def update_post(self, uri: str, patch: PostPatch) -> bool:
        """Apply a partial update to an existing post."""
        ...

    def get_post_for_uri(self, uri: str) -> Post | None:
        """Load one post."""
        ...

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
        """Recency page for a tag."""
        ...

    def get_tagged_posts_between(self, tag: str, start: int, end: int) -> list[Post]:
        """Posts of a tag inside an open time window."""
        ...

    def get_posts_by_sort_weight(
        self, tag: str, limit: int | None = None, cursor: str | None = None
    ) -> list[Post]:
        """Sort-weight page for a tag."""
        ...

    def get_recent_authors_for_tag(
        self, tag: str, last_ms: int | None = None
    ) -> list[str]:
        """Distinct recent authors of a tag."""
        ...

    def get_latest_post_per_author_for_tag(
        self, tag: str, limit: int | None = None, cursor: str | None = None
    ) -> list[Post]:
        """Newest post per author, paginated."""
        ...

    def remove_tag_from_posts_for_author(self, tag: str, authors: list[str]) -> int:
        """Strip a tag from authors' posts and garbage-collect."""
        ...

    def remove_tag_from_old_posts(self, tag: str, indexed_at: int) -> int:
        """Strip a tag from old posts and garbage-collect."""
        ...

    def delete_untagged_posts(self) -> int:
        """Garbage-collect posts without tags."""
        ...

    def update_labels_for_uris(self, entries: Sequence[LabelUpdate]) -> int:
        """Assign labels to posts atomically."""
        ...

    def get_unlabelled_posts_with_media(
        self, limit: int, lag_time_ms: int | None = None
    ) -> list[Post]:
        """Labeling work queue."""
        ...

    def delete_many_uri(self, uris: list[str]) -> int:
        """Delete posts by uri."""
        ...

    def delete_squeaky_clean_posts(self) -> int:
        """Delete stale squeaky-clean posts."""
        ...

    def aggregate_posts_by_replies(
        self,
        tag: str,
        threshold: int = 0,
        limit: int = 50,
        cursor: str | None = None,
    ) -> list[ReplyAggregate]:
        """Top reply parents for a tag."""
        ...

    def aggregate_posts_by_replies_to_collection(
        self, tag: str, threshold: int, out: str, limit: int = 50
    ) -> list[ReplyAggregate]:
        """Top reply parents, stored as a collection record."""
        ...
