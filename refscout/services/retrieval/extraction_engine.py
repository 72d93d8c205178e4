"""Orchestrates DOI and URL metadata extraction with retries and fallback."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import asdict, replace
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union
from urllib.parse import unquote

import aiohttp

from .cache import CacheManager
from .config import CacheConfig, DebounceConfig, ExtractionOptions
from .debounce import DebounceManager
from .doi_extractor import DoiMetadataExtractor, validate_doi
from .errors import (
    ExtractionTimeoutError,
    InvalidDOIError,
    InvalidURLError,
    MetadataExtractionError,
)
from .metrics import MetricsCollector
from .models import (
    MetadataExtractionRequest,
    MetadataExtractionResponse,
    ReferenceMetadata,
    SourceType,
    SourceValidation,
)
from .parsers import is_valid_doi
from .url_extractor import UrlMetadataExtractor, validate_and_sanitize_url


logger = logging.getLogger(__name__)

UNSUPPORTED_SOURCE_MESSAGE = "Source is neither a valid URL nor a valid DOI"
EMBEDDED_DOI_RE = re.compile(r"10\.\d{4,}/[^\s?#&]+")

Fetcher = Callable[[], Awaitable[ReferenceMetadata]]


def detect_source_type(source: str) -> Optional[SourceType]:
    """DOI wins over URL since a DOI link is also a valid URL."""
    try:
        validate_doi(source)
        return SourceType.DOI
    except InvalidDOIError:
        pass
    try:
        validate_and_sanitize_url(source)
        return SourceType.URL
    except InvalidURLError:
        return None


def extract_doi_from_url(url: str) -> Optional[str]:
    match = EMBEDDED_DOI_RE.search(unquote(url))
    if not match:
        return None
    doi = match.group(0).rstrip(".,;)/")
    return doi if is_valid_doi(doi) else None


class MetadataExtractionEngine:
    """Turns a DOI or URL into ``ReferenceMetadata``.

    Requests pass through the response cache and the debouncer before any
    network work. Each extraction attempt is bounded by ``timeout_ms`` and
    retried with ``2**attempt`` second backoff unless the failure is
    non-retryable. ``extract_metadata`` reports failures in the response and
    never raises.
    """

    def __init__(
        self,
        options: Optional[ExtractionOptions] = None,
        *,
        doi_extractor: Optional[DoiMetadataExtractor] = None,
        url_extractor: Optional[UrlMetadataExtractor] = None,
        session: Optional[aiohttp.ClientSession] = None,
        cache: Optional[CacheManager] = None,
        debounce: Optional[DebounceManager] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.options = options or ExtractionOptions.from_settings()
        self.doi_extractor = doi_extractor or DoiMetadataExtractor(
            session, max_concurrency=self.options.max_concurrency
        )
        self.url_extractor = url_extractor or UrlMetadataExtractor(session)
        self.cache = cache or CacheManager(CacheConfig.from_settings(), clock=clock)
        self.debounce = debounce or DebounceManager(DebounceConfig.from_settings())
        self.metrics = metrics or MetricsCollector()
        self._clock = clock
        self._sleep = sleep

    async def __aenter__(self) -> "MetadataExtractionEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.doi_extractor.close()
        await self.url_extractor.close()

    def _elapsed_ms(self, started: float) -> int:
        return max(1, int((self._clock() - started) * 1000))

    async def extract_metadata(self, request: MetadataExtractionRequest) -> MetadataExtractionResponse:
        started = self._clock()
        source = request.source.strip() if isinstance(request.source, str) else ""
        key = self.cache.create_cache_key(
            "metadata",
            source,
            {"type": request.type.value if request.type else None},
        )

        cached = self.cache.get_cached_response(key)
        if cached is not None:
            self.metrics.record_cache_hit()
            return replace(cached, extraction_time=self._elapsed_ms(started))

        self.metrics.record_cache_miss()
        if self.debounce.has_pending(key):
            self.metrics.record_debounced_request()

        response = await self.debounce.debounced_request(key, lambda: self._extract(request))
        self.metrics.update_average_response_time(self._elapsed_ms(started))
        self.cache.cache_response(key, response)
        return response

    async def _extract(self, request: MetadataExtractionRequest) -> MetadataExtractionResponse:
        started = self._clock()
        method: Optional[SourceType] = request.type
        try:
            metadata, method = await self._resolve(request)
            if metadata.confidence < self.options.min_confidence_threshold:
                raise MetadataExtractionError(
                    f"Extracted metadata confidence ({metadata.confidence:.2f}) below "
                    f"minimum threshold ({self.options.min_confidence_threshold})"
                )
        except MetadataExtractionError as exc:
            logger.info(
                "Metadata extraction failed for %s (conversation %s): %s",
                request.source, request.conversation_id, exc,
            )
            return MetadataExtractionResponse(
                success=False,
                source=request.source,
                extraction_time=self._elapsed_ms(started),
                error=str(exc),
                method=method,
            )
        except Exception as exc:
            logger.exception("Unexpected error extracting metadata for %s", request.source)
            return MetadataExtractionResponse(
                success=False,
                source=request.source,
                extraction_time=self._elapsed_ms(started),
                error=str(exc) or "Unknown extraction error",
                method=method,
            )

        return MetadataExtractionResponse(
            success=True,
            source=request.source,
            extraction_time=self._elapsed_ms(started),
            metadata=metadata,
            method=method,
        )

    async def _resolve(self, request: MetadataExtractionRequest) -> Tuple[ReferenceMetadata, SourceType]:
        source = (request.source or "").strip() if isinstance(request.source, str) else ""
        method = request.type or detect_source_type(source)
        if method is None:
            raise MetadataExtractionError(UNSUPPORTED_SOURCE_MESSAGE)

        alternate: Optional[Tuple[SourceType, Fetcher]] = None
        if method == SourceType.DOI:
            doi = validate_doi(source)
            primary: Fetcher = lambda: self.doi_extractor.extract_doi_metadata(doi)
            doi_url = f"https://doi.org/{doi}"
            alternate = (SourceType.URL, lambda: self.url_extractor.extract_url_metadata(doi_url))
        else:
            url = validate_and_sanitize_url(source)
            primary = lambda: self.url_extractor.extract_url_metadata(url)
            embedded = extract_doi_from_url(url)
            if embedded:
                alternate = (SourceType.DOI, lambda: self.doi_extractor.extract_doi_metadata(embedded))

        try:
            return await self._with_retry(primary, method), method
        except MetadataExtractionError as exc:
            if not (exc.retryable and self.options.fallback_to_alternate_method and alternate):
                raise
            alt_method, alt_fetch = alternate
            logger.info("Primary %s extraction failed (%s); trying %s", method.value, exc, alt_method.value)
            try:
                return await self._with_retry(alt_fetch, alt_method), alt_method
            except MetadataExtractionError as alt_exc:
                logger.debug("Alternate %s extraction failed: %s", alt_method.value, alt_exc)
                raise exc

    async def _with_retry(self, fetch: Fetcher, method: SourceType) -> ReferenceMetadata:
        attempts = max(0, self.options.retry_attempts)
        last_error: Optional[MetadataExtractionError] = None

        for attempt in range(attempts + 1):
            try:
                return await asyncio.wait_for(fetch(), timeout=self.options.timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                last_error = ExtractionTimeoutError(
                    f"{method.value.upper()} extraction timeout after {self.options.timeout_ms}ms"
                )
            except MetadataExtractionError as exc:
                if not exc.retryable:
                    raise
                last_error = exc

            if attempt < attempts:
                delay = 2 ** attempt
                logger.debug("Retrying %s extraction in %ss (attempt %s)", method.value, delay, attempt + 2)
                await self._sleep(delay)

        raise last_error or MetadataExtractionError(
            f"{method.value.upper()} extraction failed after all retry attempts"
        )

    async def extract_multiple_metadata(
        self, requests: List[MetadataExtractionRequest]
    ) -> List[MetadataExtractionResponse]:
        sem = asyncio.Semaphore(max(1, self.options.max_concurrency))

        async def extract_single(request: MetadataExtractionRequest) -> MetadataExtractionResponse:
            async with sem:
                started = self._clock()
                try:
                    return await self.extract_metadata(request)
                except Exception as exc:
                    logger.warning("Batch extraction failed for %s: %s", request.source, exc)
                    return MetadataExtractionResponse(
                        success=False,
                        source=request.source,
                        extraction_time=self._elapsed_ms(started),
                        error=str(exc) or exc.__class__.__name__,
                        method=request.type,
                    )

        return list(await asyncio.gather(*(extract_single(r) for r in requests)))

    def validate_source(
        self, source: str, type: Optional[Union[SourceType, str]] = None
    ) -> SourceValidation:
        source_type = SourceType(type) if type else None
        detected = source_type or detect_source_type(source or "")

        if detected == SourceType.DOI:
            try:
                validate_doi(source)
            except InvalidDOIError as exc:
                return SourceValidation(is_valid=False, detected_type=SourceType.DOI, error=str(exc))
            return SourceValidation(is_valid=True, detected_type=SourceType.DOI)

        if detected == SourceType.URL:
            try:
                validate_and_sanitize_url(source)
            except InvalidURLError as exc:
                return SourceValidation(is_valid=False, detected_type=SourceType.URL, error=str(exc))
            return SourceValidation(is_valid=True, detected_type=SourceType.URL)

        return SourceValidation(is_valid=False, error=UNSUPPORTED_SOURCE_MESSAGE)

    def get_extraction_stats(self) -> dict:
        return {
            "default_timeout": self.options.timeout_ms,
            "default_retry_attempts": self.options.retry_attempts,
            "min_confidence_threshold": self.options.min_confidence_threshold,
            "fallback_enabled": self.options.fallback_to_alternate_method,
            "max_concurrency": self.options.max_concurrency,
            "cache": self.cache.get_cache_stats(),
            "metrics": self.metrics.get_metrics(),
        }

    def update_options(self, **changes: Any) -> ExtractionOptions:
        unknown = set(changes) - set(asdict(self.options))
        if unknown:
            raise ValueError(f"Unknown extraction options: {', '.join(sorted(unknown))}")
        self.options = replace(self.options, **changes)
        return self.options


_default_engine: Optional[MetadataExtractionEngine] = None


def get_default_engine() -> MetadataExtractionEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = MetadataExtractionEngine()
    return _default_engine


async def extract_metadata(
    source: str,
    type: Optional[Union[SourceType, str]] = None,
    conversation_id: Optional[str] = None,
) -> MetadataExtractionResponse:
    request = MetadataExtractionRequest(
        source=source,
        type=type,
        conversation_id=conversation_id or "default",
    )
    return await get_default_engine().extract_metadata(request)


def validate_metadata_source(
    source: str, type: Optional[Union[SourceType, str]] = None
) -> SourceValidation:
    return get_default_engine().validate_source(source, type)
