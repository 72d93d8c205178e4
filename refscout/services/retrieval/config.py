"""Configuration objects used by the retrieval subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from refscout.core.config import Settings
    from .errors import SearchError


DEFAULT_ERROR_MESSAGES: Dict[str, str] = {
    "rate_limit": "Search rate limit exceeded. Please wait before trying again.",
    "network": "Network connection error. Please check your internet connection.",
    "parsing": "Unable to parse search results. The service may be temporarily unavailable.",
    "blocked": "Access to Google Scholar is currently blocked. Please try again later.",
    "timeout": "Search request timed out. Please try again.",
    "service_unavailable": "Google Scholar is temporarily unavailable. Trying alternative sources.",
    "quota_exceeded": "Daily search quota exceeded. Please try again tomorrow.",
}


def _settings() -> "Settings":
    from refscout.core.config import settings

    return settings


@dataclass
class RateLimitConfig:
    """Sliding-window quotas and backoff shape for the scraped source."""

    requests_per_minute: int = 10
    requests_per_hour: int = 100
    backoff_multiplier: float = 2.0
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "RateLimitConfig":
        s = settings or _settings()
        return cls(
            requests_per_minute=s.RATE_LIMIT_REQUESTS_PER_MINUTE,
            requests_per_hour=s.RATE_LIMIT_REQUESTS_PER_HOUR,
            backoff_multiplier=s.RATE_LIMIT_BACKOFF_MULTIPLIER,
            max_retries=s.RATE_LIMIT_MAX_RETRIES,
            base_delay_ms=s.RATE_LIMIT_BASE_DELAY_MS,
            max_delay_ms=s.RATE_LIMIT_MAX_DELAY_MS,
            jitter_enabled=s.RATE_LIMIT_JITTER_ENABLED,
        )


@dataclass
class FallbackConfig:
    enabled: bool = True
    fallback_sources: List[str] = field(
        default_factory=lambda: ["semantic-scholar", "crossref", "arxiv"]
    )
    fallback_timeout: int = 10000  # ms, across all sources
    max_fallback_attempts: int = 2

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "FallbackConfig":
        s = settings or _settings()
        return cls(
            enabled=s.FALLBACK_ENABLED,
            fallback_sources=list(s.FALLBACK_SOURCES),
            fallback_timeout=s.FALLBACK_TIMEOUT_MS,
            max_fallback_attempts=s.FALLBACK_MAX_ATTEMPTS,
        )


@dataclass
class ErrorHandlingConfig:
    enable_detailed_logging: bool = True
    custom_error_messages: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_ERROR_MESSAGES)
    )
    error_reporting_callback: Optional[Callable[["SearchError"], None]] = None

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "ErrorHandlingConfig":
        s = settings or _settings()
        return cls(enable_detailed_logging=s.DETAILED_ERROR_LOGGING)


@dataclass
class CacheConfig:
    ttl_ms: int = 30 * 60 * 1000
    max_size: int = 100

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "CacheConfig":
        s = settings or _settings()
        return cls(ttl_ms=s.CACHE_TTL_MS, max_size=s.CACHE_MAX_SIZE)


@dataclass
class DebounceConfig:
    delay_ms: int = 300
    max_wait_ms: int = 2000

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "DebounceConfig":
        s = settings or _settings()
        return cls(delay_ms=s.DEBOUNCE_DELAY_MS, max_wait_ms=s.DEBOUNCE_MAX_WAIT_MS)


@dataclass
class ExtractionOptions:
    """Tuning knobs for the metadata extraction engine."""

    timeout_ms: int = 15000
    retry_attempts: int = 2
    fallback_to_alternate_method: bool = True
    min_confidence_threshold: float = 0.1
    max_concurrency: int = 5

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "ExtractionOptions":
        s = settings or _settings()
        return cls(
            timeout_ms=s.EXTRACTION_TIMEOUT_MS,
            retry_attempts=s.EXTRACTION_RETRY_ATTEMPTS,
            fallback_to_alternate_method=s.EXTRACTION_FALLBACK_TO_ALTERNATE,
            min_confidence_threshold=s.EXTRACTION_MIN_CONFIDENCE,
            max_concurrency=s.EXTRACTION_MAX_CONCURRENCY,
        )
