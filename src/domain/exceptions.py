"""Custom exception hierarchy for the Feed Store.

Following error taxonomy: retryable, non-retryable, validation.
"""


class FeedStoreError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(FeedStoreError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(FeedStoreError):
    """Errors that should not be retried (validation, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Data validation errors."""

    pass


class MalformedCursorError(ValidationError):
    """Pagination cursor could not be parsed (client input error)."""

    def __init__(self, cursor: object) -> None:
        """Initialize with the offending cursor value."""
        self.cursor = cursor
        super().__init__("malformed cursor")


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass
