"""Metadata retrieval package exposing the public service API."""

from .cache import CacheManager
from .config import (
    CacheConfig,
    DebounceConfig,
    ErrorHandlingConfig,
    ExtractionOptions,
    FallbackConfig,
    RateLimitConfig,
)
from .debounce import DebounceManager
from .errors import (
    DebounceCancelledError,
    InvalidQueryError,
    MetadataExtractionError,
    SearchError,
    SearchErrorType,
)
from .extraction_engine import (
    MetadataExtractionEngine,
    extract_metadata,
    validate_metadata_source,
)
from .fallback import FallbackCoordinator
from .metrics import MetricsCollector
from .models import (
    Author,
    MetadataExtractionRequest,
    MetadataExtractionResponse,
    ReferenceMetadata,
    ReferenceType,
    ScholarResult,
    SearchOptions,
    SearchOutcome,
    SourceType,
)
from .rate_limiter import RateLimiter
from .scholar_client import ScholarSearchClient

__all__ = [
    "Author",
    "CacheConfig",
    "CacheManager",
    "DebounceCancelledError",
    "DebounceConfig",
    "DebounceManager",
    "ErrorHandlingConfig",
    "ExtractionOptions",
    "FallbackConfig",
    "FallbackCoordinator",
    "InvalidQueryError",
    "MetadataExtractionEngine",
    "MetadataExtractionError",
    "MetadataExtractionRequest",
    "MetadataExtractionResponse",
    "MetricsCollector",
    "RateLimitConfig",
    "RateLimiter",
    "ReferenceMetadata",
    "ReferenceType",
    "ScholarResult",
    "ScholarSearchClient",
    "SearchError",
    "SearchErrorType",
    "SearchOptions",
    "SearchOutcome",
    "SourceType",
    "extract_metadata",
    "validate_metadata_source",
]
