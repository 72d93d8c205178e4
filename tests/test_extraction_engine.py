"""Tests for MetadataExtractionEngine routing, retries and alternate-method fallback."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from refscout.services.retrieval import extraction_engine
from refscout.services.retrieval.cache import CacheManager
from refscout.services.retrieval.config import CacheConfig, DebounceConfig, ExtractionOptions
from refscout.services.retrieval.debounce import DebounceManager
from refscout.services.retrieval.errors import (
    DOINotFoundError,
    ExtractionTimeoutError,
    MetadataExtractionError,
    RateLimitedError,
)
from refscout.services.retrieval.extraction_engine import (
    UNSUPPORTED_SOURCE_MESSAGE,
    MetadataExtractionEngine,
    detect_source_type,
    extract_doi_from_url,
)
from refscout.services.retrieval.models import (
    Author,
    MetadataExtractionRequest,
    ReferenceMetadata,
    SourceType,
)

from conftest import RecordingSleep


def _metadata(title="Deep learning", confidence=0.9):
    return ReferenceMetadata(title=title, authors=[Author("Yann", "LeCun")], confidence=confidence)


def _fake_extractor(method_name, **mock_kwargs):
    extractor = MagicMock()
    setattr(extractor, method_name, AsyncMock(**mock_kwargs))
    extractor.close = AsyncMock()
    return extractor


def _engine(clock, *, doi=None, url=None, sleep=None, **options):
    options.setdefault("timeout_ms", 1000)
    options.setdefault("retry_attempts", 2)
    return MetadataExtractionEngine(
        ExtractionOptions(**options),
        doi_extractor=doi or _fake_extractor("extract_doi_metadata", return_value=_metadata()),
        url_extractor=url or _fake_extractor("extract_url_metadata", return_value=_metadata("From page")),
        cache=CacheManager(CacheConfig(ttl_ms=60_000, max_size=10), clock=clock),
        debounce=DebounceManager(DebounceConfig(delay_ms=0, max_wait_ms=0)),
        clock=clock,
        sleep=sleep or RecordingSleep(),
    )


class TestSourceDetection:
    @pytest.mark.parametrize(
        "source,expected",
        [
            ("10.1038/nature14539", SourceType.DOI),
            ("https://doi.org/10.1038/nature14539", SourceType.DOI),
            ("doi:10.1038/nature14539", SourceType.DOI),
            ("https://example.com/article", SourceType.URL),
            ("example.com/article", SourceType.URL),
            ("just some words", None),
            ("http://127.0.0.1/", None),
        ],
    )
    def test_detect_source_type(self, source, expected):
        assert detect_source_type(source) is expected

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://publisher.example.com/doi/10.1234/abcd.5678", "10.1234/abcd.5678"),
            ("https://publisher.example.com/doi/10.1234%2Fabcd?src=x", "10.1234/abcd"),
            ("https://example.com/about", None),
        ],
    )
    def test_extract_doi_from_url(self, url, expected):
        assert extract_doi_from_url(url) == expected


class TestExtractMetadata:
    @pytest.mark.asyncio
    async def test_unsupported_source(self, clock):
        engine = _engine(clock)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="just some words"))

        assert response.success is False
        assert response.error == UNSUPPORTED_SOURCE_MESSAGE
        assert response.extraction_time >= 1

    @pytest.mark.asyncio
    async def test_doi_is_routed_to_doi_extractor(self, clock):
        engine = _engine(clock)

        response = await engine.extract_metadata(
            MetadataExtractionRequest(source="https://doi.org/10.1038/nature14539")
        )

        assert response.success is True
        assert response.method is SourceType.DOI
        assert response.metadata.title == "Deep learning"
        engine.doi_extractor.extract_doi_metadata.assert_awaited_once_with("10.1038/nature14539")
        engine.url_extractor.extract_url_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_url_is_routed_to_url_extractor(self, clock):
        engine = _engine(clock)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="example.com/article"))

        assert response.method is SourceType.URL
        engine.url_extractor.extract_url_metadata.assert_awaited_once_with("https://example.com/article")

    @pytest.mark.asyncio
    async def test_explicit_type_overrides_detection(self, clock):
        engine = _engine(clock)

        response = await engine.extract_metadata(
            MetadataExtractionRequest(source="https://doi.org/10.1038/nature14539", type="url")
        )

        assert response.method is SourceType.URL
        engine.doi_extractor.extract_doi_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_explicit_doi_type_with_bad_doi(self, clock):
        engine = _engine(clock)

        response = await engine.extract_metadata(
            MetadataExtractionRequest(source="https://example.com/a", type=SourceType.DOI)
        )

        assert response.success is False
        assert "Invalid DOI format" in response.error

    @pytest.mark.asyncio
    async def test_retryable_errors_are_retried_with_backoff(self, clock):
        doi = _fake_extractor(
            "extract_doi_metadata",
            side_effect=[MetadataExtractionError("HTTP 500"), RateLimitedError("slow down"), _metadata()],
        )
        sleep = RecordingSleep()
        engine = _engine(clock, doi=doi, sleep=sleep)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1038/nature14539"))

        assert response.success is True
        assert doi.extract_doi_metadata.await_count == 3
        assert sleep.calls == [1, 2]

    @pytest.mark.asyncio
    async def test_non_retryable_error_aborts_without_alternate(self, clock):
        doi = _fake_extractor("extract_doi_metadata", side_effect=DOINotFoundError("DOI not found: 10.1000/x1"))
        sleep = RecordingSleep()
        engine = _engine(clock, doi=doi, sleep=sleep)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1000/x1"))

        assert response.success is False
        assert response.error == "DOI not found: 10.1000/x1"
        assert doi.extract_doi_metadata.await_count == 1
        assert sleep.calls == []
        engine.url_extractor.extract_url_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_doi_falls_back_to_resolver_page(self, clock):
        doi = _fake_extractor("extract_doi_metadata", side_effect=RateLimitedError("Rate limit exceeded"))
        engine = _engine(clock, doi=doi)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1038/nature14539"))

        assert response.success is True
        assert response.method is SourceType.URL
        assert response.metadata.title == "From page"
        assert doi.extract_doi_metadata.await_count == 3
        engine.url_extractor.extract_url_metadata.assert_awaited_once_with("https://doi.org/10.1038/nature14539")

    @pytest.mark.asyncio
    async def test_url_falls_back_to_embedded_doi(self, clock):
        url = _fake_extractor("extract_url_metadata", side_effect=ExtractionTimeoutError("timed out"))
        engine = _engine(clock, url=url)

        response = await engine.extract_metadata(
            MetadataExtractionRequest(source="https://publisher.example.com/doi/10.1234/abcd.5678")
        )

        assert response.success is True
        assert response.method is SourceType.DOI
        engine.doi_extractor.extract_doi_metadata.assert_awaited_once_with("10.1234/abcd.5678")

    @pytest.mark.asyncio
    async def test_alternate_disabled_reports_original_error(self, clock):
        doi = _fake_extractor("extract_doi_metadata", side_effect=RateLimitedError("Rate limit exceeded"))
        engine = _engine(clock, doi=doi, fallback_to_alternate_method=False)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1038/nature14539"))

        assert response.success is False
        assert response.error == "Rate limit exceeded"
        engine.url_extractor.extract_url_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_alternate_reports_original_error(self, clock):
        doi = _fake_extractor("extract_doi_metadata", side_effect=RateLimitedError("Rate limit exceeded"))
        url = _fake_extractor("extract_url_metadata", side_effect=MetadataExtractionError("HTTP 503"))
        engine = _engine(clock, doi=doi, url=url, retry_attempts=0)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1038/nature14539"))

        assert response.success is False
        assert response.error == "Rate limit exceeded"
        url.extract_url_metadata.assert_awaited_once_with("https://doi.org/10.1038/nature14539")

    @pytest.mark.asyncio
    async def test_each_attempt_is_bounded_by_timeout(self, clock):
        async def hang(url):
            await asyncio.sleep(1)

        url = MagicMock()
        url.extract_url_metadata = hang
        url.close = AsyncMock()
        engine = _engine(clock, url=url, timeout_ms=10, retry_attempts=0)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="https://example.com/slow"))

        assert response.success is False
        assert response.error == "URL extraction timeout after 10ms"

    @pytest.mark.asyncio
    async def test_low_confidence_is_rejected(self, clock):
        doi = _fake_extractor("extract_doi_metadata", return_value=_metadata(confidence=0.05))
        engine = _engine(clock, doi=doi)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1038/nature14539"))

        assert response.success is False
        assert "below minimum threshold" in response.error

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_become_failed_responses(self, clock):
        doi = _fake_extractor("extract_doi_metadata", side_effect=KeyError("title"))
        engine = _engine(clock, doi=doi)

        response = await engine.extract_metadata(MetadataExtractionRequest(source="10.1038/nature14539"))

        assert response.success is False
        assert response.error


class TestShaping:
    @pytest.mark.asyncio
    async def test_successes_are_cached(self, clock):
        engine = _engine(clock)
        request = MetadataExtractionRequest(source="10.1038/nature14539")

        first = await engine.extract_metadata(request)
        second = await engine.extract_metadata(request)

        assert first.metadata == second.metadata
        assert engine.doi_extractor.extract_doi_metadata.await_count == 1
        assert engine.metrics.get_metrics()["cached_requests"] == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, clock):
        doi = _fake_extractor("extract_doi_metadata", side_effect=DOINotFoundError("missing"))
        engine = _engine(clock, doi=doi)
        request = MetadataExtractionRequest(source="10.1000/x1")

        await engine.extract_metadata(request)
        await engine.extract_metadata(request)

        assert doi.extract_doi_metadata.await_count == 2

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, clock):
        engine = _engine(clock)

        responses = await engine.extract_multiple_metadata([
            MetadataExtractionRequest(source="10.1038/nature14539"),
            MetadataExtractionRequest(source="nonsense"),
            MetadataExtractionRequest(source="https://example.com/a"),
        ])

        assert [r.source for r in responses] == ["10.1038/nature14539", "nonsense", "https://example.com/a"]
        assert [r.success for r in responses] == [True, False, True]

    @pytest.mark.asyncio
    async def test_batch_survives_cancelled_requests(self, clock):
        started = asyncio.Event()
        hang = asyncio.Event()

        async def never_finishes(doi):
            started.set()
            await hang.wait()

        doi = _fake_extractor("extract_doi_metadata", side_effect=never_finishes)
        engine = _engine(clock, doi=doi)

        batch = asyncio.ensure_future(engine.extract_multiple_metadata([
            MetadataExtractionRequest(source="10.1038/nature14539"),
            MetadataExtractionRequest(source="10.1000/x1"),
        ]))
        await asyncio.wait_for(started.wait(), timeout=1)
        assert engine.debounce.cancel_pending_requests() == 2

        responses = await asyncio.wait_for(batch, timeout=1)

        assert [r.source for r in responses] == ["10.1038/nature14539", "10.1000/x1"]
        assert [r.success for r in responses] == [False, False]
        assert all("cancelled" in r.error for r in responses)
        assert all(r.extraction_time >= 1 for r in responses)

    @pytest.mark.asyncio
    async def test_batch_tolerates_non_string_source(self, clock):
        engine = _engine(clock)

        responses = await engine.extract_multiple_metadata([
            MetadataExtractionRequest(source=12345),
            MetadataExtractionRequest(source="10.1038/nature14539"),
        ])

        assert [r.success for r in responses] == [False, True]
        assert responses[0].error == UNSUPPORTED_SOURCE_MESSAGE

    @pytest.mark.asyncio
    async def test_batch_caps_requests_in_flight(self, clock):
        in_flight = 0
        peak = 0

        async def tracked(doi):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            for _ in range(5):
                await asyncio.sleep(0)
            in_flight -= 1
            return _metadata(title=f"Paper {doi}")

        doi = _fake_extractor("extract_doi_metadata", side_effect=tracked)
        engine = _engine(clock, doi=doi, max_concurrency=5)

        responses = await engine.extract_multiple_metadata(
            [MetadataExtractionRequest(source=f"10.1000/item{i}") for i in range(12)]
        )

        assert all(r.success for r in responses)
        assert doi.extract_doi_metadata.await_count == 12
        assert 1 < peak <= 5

    @pytest.mark.asyncio
    async def test_close_closes_extractors(self, clock):
        engine = _engine(clock)
        async with engine:
            pass
        engine.doi_extractor.close.assert_awaited_once()
        engine.url_extractor.close.assert_awaited_once()


class TestValidationAndOptions:
    @pytest.mark.parametrize(
        "source,type,valid,detected,error",
        [
            ("10.1038/nature14539", None, True, SourceType.DOI, None),
            ("https://example.com", None, True, SourceType.URL, None),
            ("garbage", None, False, None, UNSUPPORTED_SOURCE_MESSAGE),
            ("not-a-doi", "doi", False, SourceType.DOI, "Invalid DOI format"),
            ("http://localhost/", "url", False, SourceType.URL, "Private or local URLs"),
        ],
    )
    def test_validate_source(self, clock, source, type, valid, detected, error):
        result = _engine(clock).validate_source(source, type)

        assert result.is_valid is valid
        assert result.detected_type is detected
        if error is None:
            assert result.error is None
        else:
            assert error in result.error

    def test_update_options(self, clock):
        engine = _engine(clock)

        options = engine.update_options(timeout_ms=5000, min_confidence_threshold=0.3)

        assert options.timeout_ms == 5000
        stats = engine.get_extraction_stats()
        assert stats["default_timeout"] == 5000
        assert stats["min_confidence_threshold"] == 0.3
        assert stats["default_retry_attempts"] == 2

    def test_update_options_rejects_unknown_keys(self, clock):
        with pytest.raises(ValueError, match="bogus"):
            _engine(clock).update_options(bogus=1)


class TestModuleFunctions:
    def test_validate_metadata_source(self):
        assert extraction_engine.validate_metadata_source("10.1038/nature14539").detected_type is SourceType.DOI

    @pytest.mark.asyncio
    async def test_extract_metadata_uses_default_engine(self, clock, monkeypatch):
        engine = _engine(clock)
        monkeypatch.setattr(extraction_engine, "_default_engine", engine)

        response = await extraction_engine.extract_metadata("10.1038/nature14539", conversation_id="c1")

        assert response.success is True
        assert extraction_engine.get_default_engine() is engine
