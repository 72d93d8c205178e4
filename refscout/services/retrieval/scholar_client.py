"""Rate-limited Google Scholar client with retries, fallback and request shaping."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .cache import CacheManager
from .config import (
    CacheConfig,
    DebounceConfig,
    ErrorHandlingConfig,
    FallbackConfig,
    RateLimitConfig,
)
from .debounce import DebounceManager
from .errors import InvalidQueryError, SearchError, SearchErrorType
from .fallback import FallbackCoordinator, build_default_fallback_sources, filter_complete_results
from .interfaces import ResultParser
from .metrics import MetricsCollector
from .models import ConnectionTestResult, ScholarResult, SearchOptions, SearchOutcome
from .parsers import AlternativeLinkParser, PrimaryResultParser, contains_no_results_indicators
from .rate_limiter import RateLimiter


logger = logging.getLogger(__name__)

SOURCE_NAME = "google_scholar"
MIN_PAGE_LENGTH = 100
MAX_RESULTS_PER_PAGE = 20
DEFAULT_RETRY_AFTER_SECONDS = 60

BOT_CHECK_PHRASES = ("captcha", "unusual traffic", "automated queries")


def _settings():
    from refscout.core.config import settings

    return settings


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return None


class ScholarSearchClient:
    """Search client for the scraped Google Scholar results page.

    ``search`` and ``search_with_details`` never raise on remote failure:
    exhausted retries, quota denials and unparseable pages are routed to the
    fallback coordinator, which in the worst case yields a degraded
    placeholder outcome. Only an empty query raises ``InvalidQueryError``.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        rate_limit_config: Optional[RateLimitConfig] = None,
        fallback_config: Optional[FallbackConfig] = None,
        error_handling_config: Optional[ErrorHandlingConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[CacheManager] = None,
        debounce: Optional[DebounceManager] = None,
        metrics: Optional[MetricsCollector] = None,
        fallback_coordinator: Optional[FallbackCoordinator] = None,
        primary_parser: Optional[ResultParser] = None,
        alternative_parser: Optional[ResultParser] = None,
        base_url: Optional[str] = None,
        request_timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        s = _settings()
        self.rate_limit_config = rate_limit_config or RateLimitConfig.from_settings(s)
        self.fallback_config = fallback_config or FallbackConfig.from_settings(s)
        self.error_handling_config = error_handling_config or ErrorHandlingConfig.from_settings(s)

        self.rate_limiter = rate_limiter or RateLimiter(
            self.rate_limit_config,
            failure_threshold=s.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            clock=clock,
        )
        self.cache = cache or CacheManager(CacheConfig.from_settings(s), clock=clock)
        self.debounce = debounce or DebounceManager(DebounceConfig.from_settings(s))
        self.metrics = metrics or MetricsCollector(log_every_n_requests=s.METRICS_LOG_EVERY_N_REQUESTS)
        self.primary_parser = primary_parser or PrimaryResultParser()
        self.alternative_parser = alternative_parser or AlternativeLinkParser()

        self.base_url = base_url or s.SCHOLAR_BASE_URL
        self.request_timeout = request_timeout if request_timeout is not None else s.SCHOLAR_REQUEST_TIMEOUT
        self.probe_timeout = probe_timeout if probe_timeout is not None else s.SCHOLAR_PROBE_TIMEOUT
        self.user_agent = user_agent or s.BROWSER_USER_AGENT

        self._session = session
        self._owns_session = session is None
        self._fallback = fallback_coordinator
        self._clock = clock
        self._sleep = sleep

    async def __aenter__(self) -> "ScholarSearchClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _get_fallback(self) -> FallbackCoordinator:
        if self._fallback is None:
            self._fallback = FallbackCoordinator(
                self.fallback_config,
                build_default_fallback_sources(self._get_session()),
                self.error_handling_config,
                scholar_base_url=self.base_url,
            )
        return self._fallback

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))

    def _log_detail(self, message: str, *args: Any) -> None:
        if self.error_handling_config.enable_detailed_logging:
            logger.warning("[ScholarSearchClient] " + message, *args)

    def _create_error(self, type: SearchErrorType, message: str, **kwargs: Any) -> SearchError:
        error = SearchError(type, message, **kwargs)
        callback = self.error_handling_config.error_reporting_callback
        if callback is not None:
            try:
                callback(error)
            except Exception:
                logger.exception("Error reporting callback failed")
        return error

    def user_message(self, error: Optional[SearchError]) -> str:
        if error is None:
            return "Search failed for an unknown reason."
        messages = self.error_handling_config.custom_error_messages
        return messages.get(error.type.value) or error.message

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> List[ScholarResult]:
        outcome = await self.search_with_details(query, options)
        return outcome.results

    async def search_with_details(self, query: str, options: Optional[SearchOptions] = None) -> SearchOutcome:
        if not isinstance(query, str) or not query.strip():
            raise InvalidQueryError("Search query cannot be empty")
        query = query.strip()
        options = options or SearchOptions()

        key = self.cache.create_cache_key("search", query, options.to_params())
        cached = self.cache.get_cached_response(key)
        if cached is not None:
            self.metrics.record_cache_hit()
            logger.debug("Cache hit for search %r", query)
            return replace(cached, results=list(cached.results))

        self.metrics.record_cache_miss()
        if self.debounce.has_pending(key):
            self.metrics.record_debounced_request()

        started = self._clock()
        outcome = await self.debounce.debounced_request(key, lambda: self._execute(query, options))
        self.metrics.update_average_response_time(self._elapsed_ms(started))
        self.cache.cache_response(key, outcome)
        return outcome

    async def _execute(self, query: str, options: SearchOptions) -> SearchOutcome:
        started = self._clock()
        url = self.build_search_url(query, options)
        max_attempts = max(1, self.rate_limit_config.max_retries)
        last_error: Optional[SearchError] = None
        attempts = 0

        while attempts < max_attempts:
            if attempts > 0:
                delay_ms = self.rate_limiter.backoff_delay_ms(attempts - 1)
                self._log_detail("Retrying search attempt %s/%s after %.0fms", attempts + 1, max_attempts, delay_ms)
                await self._sleep(delay_ms / 1000.0)

            decision = self.rate_limiter.check_and_record()
            if not decision.allowed:
                error_type = (
                    SearchErrorType.SERVICE_UNAVAILABLE
                    if decision.reason == "blocked"
                    else SearchErrorType.RATE_LIMIT
                )
                last_error = self._create_error(
                    error_type,
                    decision.reason or "Request denied by rate limiter",
                    is_retryable=False,
                    retry_after=decision.retry_after,
                )
                logger.info("Search denied locally (%s); routing to fallback", decision.reason)
                break

            attempts += 1
            try:
                html = await self._fetch(url)
                results = self._parse_page(html)
            except SearchError as exc:
                last_error = exc
                self.rate_limiter.record_failure(exc)
                self._log_detail("Search attempt %s failed: %s (%s)", attempts, exc.message, exc.type.value)
                if not exc.should_retry:
                    break
                continue

            self.rate_limiter.record_success()
            return SearchOutcome(
                results=self.validate_results(results, options.max_results),
                source=SOURCE_NAME,
                success=True,
                processing_time=self._elapsed_ms(started),
                retry_count=max(0, attempts - 1),
            )

        return await self._run_fallback(query, options, last_error, started, max(0, attempts - 1))

    async def _run_fallback(
        self,
        query: str,
        options: SearchOptions,
        last_error: Optional[SearchError],
        started: float,
        retry_count: int,
    ) -> SearchOutcome:
        fallback = await self._get_fallback().run(query, options)
        error = None
        if fallback.degraded_mode:
            error = self.user_message(last_error)
            if fallback.error:
                error = f"{error} Alternative sources failed: {fallback.error}"

        return SearchOutcome(
            results=self.validate_results(fallback.results, options.max_results),
            source=fallback.source,
            success=not fallback.degraded_mode,
            error=error,
            fallback_used=True,
            degraded_mode=fallback.degraded_mode,
            processing_time=self._elapsed_ms(started),
            retry_count=retry_count,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }

    async def _fetch(self, url: str) -> str:
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with session.get(url, headers=self._headers(), timeout=timeout) as response:
                if not 200 <= response.status < 300:
                    raise self._status_error(
                        response.status,
                        _parse_retry_after(response.headers.get("Retry-After")),
                        response.reason,
                    )
                html = await response.text()
        except SearchError:
            raise
        except asyncio.TimeoutError as exc:
            raise self._create_error(
                SearchErrorType.TIMEOUT,
                f"Request timeout after {self.request_timeout:g} seconds",
                original_error=exc,
            ) from exc
        except aiohttp.ClientError as exc:
            raise self._create_error(
                SearchErrorType.NETWORK,
                f"Network error: {exc}",
                original_error=exc,
            ) from exc

        if not html or len(html) < MIN_PAGE_LENGTH:
            raise self._create_error(
                SearchErrorType.PARSING,
                "Received empty or invalid response from Google Scholar",
            )

        lower = html.lower()
        if any(phrase in lower for phrase in BOT_CHECK_PHRASES):
            raise self._create_error(
                SearchErrorType.BLOCKED,
                "Google Scholar returned a bot-check page",
            )
        return html

    def _status_error(self, status: int, retry_after: Optional[int], reason: Optional[str]) -> SearchError:
        if status == 429:
            return self._create_error(
                SearchErrorType.RATE_LIMIT,
                "Rate limit exceeded",
                retry_after=retry_after or DEFAULT_RETRY_AFTER_SECONDS,
                status_code=status,
            )
        if status == 403:
            return self._create_error(SearchErrorType.BLOCKED, "Access blocked by Google Scholar", status_code=status)
        if status in (502, 503, 504):
            return self._create_error(
                SearchErrorType.SERVICE_UNAVAILABLE,
                f"Google Scholar service unavailable ({status})",
                retry_after=retry_after,
                status_code=status,
            )
        if status == 500:
            return self._create_error(
                SearchErrorType.SERVICE_UNAVAILABLE,
                "Google Scholar internal server error",
                status_code=status,
            )
        if status == 404:
            return self._create_error(
                SearchErrorType.NETWORK,
                "Google Scholar endpoint not found",
                is_retryable=False,
                status_code=status,
            )
        return self._create_error(
            SearchErrorType.NETWORK,
            f"HTTP {status}: {reason or 'unexpected status'}",
            is_retryable=status >= 500,
            status_code=status,
        )

    def _parse_page(self, html: str) -> List[ScholarResult]:
        results = self.primary_parser.parse(html)
        if results:
            return results

        if contains_no_results_indicators(html):
            logger.info("Search returned no matching articles")
            return []

        results = self.alternative_parser.parse(html)
        if results:
            return results

        raise self._create_error(
            SearchErrorType.PARSING,
            "Unable to extract any results from the search page",
        )

    def validate_results(self, results: List[ScholarResult], max_results: Optional[int] = None) -> List[ScholarResult]:
        """Drop records missing a title or authors and apply ``max_results``."""
        valid = filter_complete_results(results)
        if max_results:
            valid = valid[:max_results]
        return valid

    def build_search_url(self, query: str, options: Optional[SearchOptions] = None) -> str:
        options = options or SearchOptions()
        params: Dict[str, Any] = {"q": query, "hl": options.language or "en"}

        if options.year_start or options.year_end:
            params["as_ylo"] = options.year_start or 1900
            params["as_yhi"] = options.year_end or datetime.now(timezone.utc).year
        if options.sort_by == "date":
            params["scisbd"] = 1
        if not options.include_patents or not options.include_citations:
            params["as_vis"] = 1
        if options.max_results:
            params["num"] = min(options.max_results, MAX_RESULTS_PER_PAGE)

        return f"{self.base_url}?{urlencode(params)}"

    async def test_connection(self) -> ConnectionTestResult:
        """Probe the search endpoint with a HEAD request; rate-limit state is untouched."""
        started = self._clock()
        url = self.build_search_url("test", SearchOptions(max_results=1))
        try:
            session = self._get_session()
            timeout = aiohttp.ClientTimeout(total=self.probe_timeout)
            async with session.head(url, headers=self._headers(), timeout=timeout) as response:
                status = response.status
                reason = response.reason
        except asyncio.TimeoutError:
            return ConnectionTestResult(
                success=False,
                response_time=self._elapsed_ms(started),
                error=f"Connection test timed out after {self.probe_timeout:g} seconds",
            )
        except aiohttp.ClientError as exc:
            return ConnectionTestResult(
                success=False,
                response_time=self._elapsed_ms(started),
                error=str(exc) or exc.__class__.__name__,
            )

        ok = 200 <= status < 400
        return ConnectionTestResult(
            success=ok,
            response_time=self._elapsed_ms(started),
            status_code=status,
            error=None if ok else f"HTTP {status}: {reason or 'unexpected status'}",
        )

    def get_client_status(self) -> Dict[str, Any]:
        status = self.rate_limiter.get_status()
        return {
            "rate_limit_status": {
                "is_blocked": status["is_blocked"],
                "block_until": status["block_until"],
                "requests_in_last_minute": status["requests_in_last_minute"],
                "requests_in_last_hour": status["requests_in_last_hour"],
                "remaining_minute_requests": status["remaining_minute_requests"],
                "remaining_hourly_requests": status["remaining_hourly_requests"],
            },
            "service_status": {
                "is_available": status["service_available"],
                "consecutive_failures": status["consecutive_failures"],
                "last_successful_request": status["last_successful_request"],
                "time_since_last_success": status["time_since_last_success"],
            },
            "error_handling": {
                "fallback_enabled": self.fallback_config.enabled,
                "detailed_logging": self.error_handling_config.enable_detailed_logging,
                "max_retries": self.rate_limit_config.max_retries,
                "current_backoff_multiplier": self.rate_limit_config.backoff_multiplier,
            },
            "cache": self.cache.get_cache_stats(),
            "debounce": self.debounce.get_debounce_stats(),
            "metrics": self.metrics.get_metrics(),
        }

    def reset_client_state(self) -> None:
        self.rate_limiter.reset()
