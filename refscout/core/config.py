import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


DEFAULT_CONTACT_EMAIL = "contact@example.com"
DEFAULT_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = Field(default="development", alias="ENVIRONMENT")
    LOG_LEVEL: str = Field(default="INFO", alias="LOG_LEVEL")

    # Upstream endpoints
    SCHOLAR_BASE_URL: str = "https://scholar.google.com/scholar"
    CROSSREF_API_BASE: str = "https://api.crossref.org/works/"
    SEMANTIC_SCHOLAR_API_URL: str = "https://api.semanticscholar.org/graph/v1/paper/search"
    CROSSREF_SEARCH_URL: str = "https://api.crossref.org/works"
    ARXIV_API_URL: str = "http://export.arxiv.org/api/query"
    SEMANTIC_SCHOLAR_API_KEY: Optional[str] = None

    # Identification
    CONTACT_EMAIL: str = Field(default=DEFAULT_CONTACT_EMAIL, alias="CONTACT_EMAIL")
    BROWSER_USER_AGENT: str = DEFAULT_BROWSER_USER_AGENT
    API_USER_AGENT: str = "RefScout/1.0 (Academic Research Tool)"

    # Timeouts (seconds)
    SCHOLAR_REQUEST_TIMEOUT: float = 30.0
    SCHOLAR_PROBE_TIMEOUT: float = 10.0
    DOI_REQUEST_TIMEOUT: float = 10.0
    DOI_PROBE_TIMEOUT: float = 5.0
    URL_REQUEST_TIMEOUT: float = 10.0

    # Rate limiting / circuit breaker
    RATE_LIMIT_REQUESTS_PER_MINUTE: int = 10
    RATE_LIMIT_REQUESTS_PER_HOUR: int = 100
    RATE_LIMIT_BACKOFF_MULTIPLIER: float = 2.0
    RATE_LIMIT_MAX_RETRIES: int = 3
    RATE_LIMIT_BASE_DELAY_MS: int = 1000
    RATE_LIMIT_MAX_DELAY_MS: int = 30000
    RATE_LIMIT_JITTER_ENABLED: bool = True
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5

    # Fallback sources
    FALLBACK_ENABLED: bool = True
    FALLBACK_SOURCES: List[str] = Field(
        default_factory=lambda: ["semantic-scholar", "crossref", "arxiv"]
    )
    FALLBACK_TIMEOUT_MS: int = 10000
    FALLBACK_MAX_ATTEMPTS: int = 2

    # Error handling
    DETAILED_ERROR_LOGGING: bool = True

    # Request shaping
    CACHE_TTL_MS: int = 30 * 60 * 1000
    CACHE_MAX_SIZE: int = 100
    DEBOUNCE_DELAY_MS: int = 300
    DEBOUNCE_MAX_WAIT_MS: int = 2000
    METRICS_LOG_EVERY_N_REQUESTS: int = 50

    # Metadata extraction
    EXTRACTION_TIMEOUT_MS: int = 15000
    EXTRACTION_RETRY_ATTEMPTS: int = 2
    EXTRACTION_FALLBACK_TO_ALTERNATE: bool = True
    EXTRACTION_MIN_CONFIDENCE: float = 0.1
    EXTRACTION_MAX_CONCURRENCY: int = 5

    class Config:
        env_file = (".env", "../.env")
        case_sensitive = True
        extra = "ignore"

    @model_validator(mode="after")
    def validate_limits(self):
        problems = []
        is_dev = (self.ENVIRONMENT or "development").lower() == "development"

        if self.RATE_LIMIT_REQUESTS_PER_MINUTE <= 0:
            problems.append("RATE_LIMIT_REQUESTS_PER_MINUTE must be positive")
        if self.RATE_LIMIT_REQUESTS_PER_HOUR < self.RATE_LIMIT_REQUESTS_PER_MINUTE:
            problems.append("RATE_LIMIT_REQUESTS_PER_HOUR must be >= RATE_LIMIT_REQUESTS_PER_MINUTE")
        if self.RATE_LIMIT_MAX_DELAY_MS < self.RATE_LIMIT_BASE_DELAY_MS:
            problems.append("RATE_LIMIT_MAX_DELAY_MS must be >= RATE_LIMIT_BASE_DELAY_MS")
        if not 0.0 <= self.EXTRACTION_MIN_CONFIDENCE <= 1.0:
            problems.append("EXTRACTION_MIN_CONFIDENCE must be within [0, 1]")
        if not is_dev and self.CONTACT_EMAIL == DEFAULT_CONTACT_EMAIL:
            problems.append("CONTACT_EMAIL must be set outside development")

        if problems:
            raise ValueError(f"Invalid retrieval settings: {'; '.join(problems)}")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic root handler for hosts that have not configured logging."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
