"""Exception types raised inside the retrieval subsystem."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class SearchErrorType(str, Enum):
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    PARSING = "parsing"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"


RETRYABLE_SEARCH_ERRORS = {
    SearchErrorType.NETWORK,
    SearchErrorType.TIMEOUT,
    SearchErrorType.RATE_LIMIT,
    SearchErrorType.SERVICE_UNAVAILABLE,
}

NEVER_RETRYABLE_SEARCH_ERRORS = {
    SearchErrorType.BLOCKED,
    SearchErrorType.PARSING,
    SearchErrorType.QUOTA_EXCEEDED,
}


class SearchError(Exception):
    """Typed failure from the scraped search source."""

    def __init__(
        self,
        type: SearchErrorType,
        message: str,
        *,
        is_retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.type = SearchErrorType(type)
        self.message = message
        self.is_retryable = (
            self.type in RETRYABLE_SEARCH_ERRORS if is_retryable is None else is_retryable
        )
        self.retry_after = retry_after
        self.status_code = status_code
        self.original_error = original_error

    @property
    def should_retry(self) -> bool:
        if not self.is_retryable:
            return False
        return self.type not in NEVER_RETRYABLE_SEARCH_ERRORS

    def __repr__(self) -> str:
        return f"SearchError(type={self.type.value!r}, message={self.message!r})"


class InvalidQueryError(ValueError):
    """Raised when a search query is empty or malformed."""


class MetadataExtractionError(Exception):
    """Base class for DOI/URL extraction failures.

    ``retryable`` tells the extraction engine whether another attempt can help.
    """

    retryable = True


class InvalidDOIError(MetadataExtractionError, ValueError):
    retryable = False


class InvalidURLError(MetadataExtractionError, ValueError):
    retryable = False


class PrivateURLError(InvalidURLError):
    pass


class SourceNotFoundError(MetadataExtractionError):
    """The remote resource does not exist (HTTP 404/410)."""

    retryable = False


class DOINotFoundError(SourceNotFoundError):
    pass


class NotHtmlDocumentError(MetadataExtractionError):
    retryable = False


class NoMeaningfulMetadataError(MetadataExtractionError):
    retryable = False


class RateLimitedError(MetadataExtractionError):
    pass


class ExtractionTimeoutError(MetadataExtractionError):
    pass


class DebounceCancelledError(Exception):
    """Raised to callers whose coalesced request was cancelled."""
