"""Constants shared by feed queries and cleanup jobs."""

from typing import Final

CURSOR_SEPARATOR: Final[str] = "::"

NSFW_LABELS: Final[frozenset[str]] = frozenset(
    {"porn", "nudity", "sexual", "underwear"}
)

SQUEAKY_CLEAN_TAG: Final[str] = "squeaky-clean"
MUTUALS_AD_TAG: Final[str] = "mutuals-ad"
SQUEAKY_CLEAN_MAX_AGE_MS: Final[int] = 5 * 60 * 1000

DEFAULT_PAGE_LIMIT: Final[int] = 50
DEFAULT_RECENT_AUTHORS_WINDOW_MS: Final[int] = 600_000
DEFAULT_LABEL_LAG_TIME_MS: Final[int] = 60_000

# Largest value a BIGINT / SQLite INTEGER column can hold
MAX_SQL_BIGINT: Final[int] = 2**63 - 1
