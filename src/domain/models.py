"""Domain models for the Feed Store.

All models use Pydantic v2 for validation and serialization.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from src.domain.feed_constants import MAX_SQL_BIGINT


def _unique_strings(values: list[str]) -> list[str]:
    """Drop duplicates while keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class Post(BaseModel):
    """Post record as persisted by the repository.

    `labels` is tri-state: None means the post was never labeled,
    an empty list means it was labeled and no label applies.
    """

    uri: str = Field(..., min_length=1, description="Post URI (primary key)")
    cid: str = Field(..., min_length=1, description="Content hash, tie-break key")
    author: str = Field(..., description="Author DID")
    text: str = Field(default="", description="Post text")
    reply_parent: str | None = Field(default=None, description="Parent post URI")
    reply_root: str | None = Field(default=None, description="Thread root URI")
    indexed_at: int = Field(
        ..., ge=0, le=MAX_SQL_BIGINT, description="Ingestion time (epoch millis)"
    )
    has_image: bool = Field(default=False, description="Post has image media")
    embed: dict[str, Any] | None = Field(
        default=None, description="Attached media payload"
    )
    algo_tags: list[str] = Field(
        default_factory=list, description="Feed tags the post belongs to"
    )
    labels: list[str] | None = Field(
        default=None, description="Moderation labels (None = not yet labeled)"
    )
    sort_weight: float | None = Field(
        default=None, allow_inf_nan=False, description="Optional ranking score"
    )

    @field_validator("algo_tags")
    @classmethod
    def validate_algo_tags(cls, v: list[str]) -> list[str]:
        """Tags are a set; keep them unique."""
        return _unique_strings(v)

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: list[str] | None) -> list[str] | None:
        """Labels are a set; keep them unique."""
        if v is None:
            return None
        return _unique_strings(v)


class PostPatch(BaseModel):
    """Partial post update.

    Only fields explicitly set on the instance are written; an explicit
    None clears the column. Identity fields (uri, cid, author, indexed_at)
    are not patchable.
    """

    model_config = ConfigDict(extra="forbid")

    text: str | None = None
    reply_parent: str | None = None
    reply_root: str | None = None
    has_image: bool | None = None
    embed: dict[str, Any] | None = None
    algo_tags: list[str] | None = None
    labels: list[str] | None = None
    sort_weight: float | None = Field(default=None, allow_inf_nan=False)

    @field_validator("algo_tags", "labels")
    @classmethod
    def validate_string_sets(cls, v: list[str] | None) -> list[str] | None:
        """Keep set-valued fields unique."""
        if v is None:
            return None
        return _unique_strings(v)

    @field_validator("has_image", "algo_tags", "text")
    @classmethod
    def validate_not_null(cls, v: Any, info: ValidationInfo) -> Any:
        """Columns without a NULL state cannot be cleared."""
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

    def changes(self) -> dict[str, Any]:
        """Return only the fields that were explicitly set."""
        return self.model_dump(exclude_unset=True)


class LabelUpdate(BaseModel):
    """Labels to assign to a single post."""

    uri: str
    labels: list[str] = Field(default_factory=list)

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: list[str]) -> list[str]:
        """Labels are a set; keep them unique."""
        return _unique_strings(v)


class SubState(BaseModel):
    """Persisted position in an external event stream."""

    service: str
    cursor: int


class CollectionRecord(BaseModel):
    """Generic key/value record."""

    key: str
    value: Any = None


class ListMember(BaseModel):
    """Member of an allow/deny list, keyed by DID."""

    did: str
    data: dict[str, Any] | None = None


class ReplyAggregate(BaseModel):
    """Reply count for a parent post."""

    uri: str
    count: int
