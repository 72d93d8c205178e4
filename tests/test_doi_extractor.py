"""Tests for DOI normalization and Crossref metadata extraction."""

import asyncio
from datetime import date

import aiohttp
import pytest

from refscout.services.retrieval.doi_extractor import (
    DoiMetadataExtractor,
    calculate_doi_confidence,
    extract_pages,
    map_crossref_type,
    normalize_doi,
    parse_crossref_authors,
    parse_crossref_date,
    transform_crossref_work,
    validate_doi,
)
from refscout.services.retrieval.errors import (
    DOINotFoundError,
    ExtractionTimeoutError,
    InvalidDOIError,
    MetadataExtractionError,
    NoMeaningfulMetadataError,
    RateLimitedError,
)
from refscout.services.retrieval.models import ReferenceType

from conftest import FakeResponse, FakeSession


CROSSREF_WORK = {
    "DOI": "10.1038/nature14539",
    "title": ["Deep learning"],
    "author": [
        {"given": "Yann", "family": "LeCun"},
        {"given": "Yoshua", "family": "Bengio", "suffix": "Jr."},
        {"name": "Consortium"},
    ],
    "published-print": {"date-parts": [[2015, 5, 28]]},
    "issued": {"date-parts": [[2015, 5]]},
    "container-title": ["Nature"],
    "volume": "521",
    "issue": "7553",
    "page": "436-444",
    "publisher": "Springer Science and Business Media LLC",
    "abstract": "<jats:p>Deep learning allows <jats:italic>computational</jats:italic> models.</jats:p>",
    "subject": ["Multidisciplinary"],
    "type": "journal-article",
    "URL": "http://dx.doi.org/10.1038/nature14539",
}


def _extractor(session):
    return DoiMetadataExtractor(
        session,
        api_base="https://api.crossref.test/works",
        contact_email="team@example.org",
        user_agent="RefScoutTest/1.0",
    )


class TestNormalization:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("https://doi.org/10.1000/xyz123", "10.1000/xyz123"),
            ("http://dx.doi.org/10.1000/xyz123", "10.1000/xyz123"),
            ("doi:10.1000/ABC", "10.1000/ABC"),
            ("DOI: 10.1000/abc", "10.1000/abc"),
            ("  10.1000/abc  ", "10.1000/abc"),
        ],
    )
    def test_normalize_doi(self, raw, expected):
        assert normalize_doi(raw) == expected

    def test_validate_doi_returns_normalized(self):
        assert validate_doi("https://doi.org/10.1038/nature14539") == "10.1038/nature14539"

    @pytest.mark.parametrize(
        "raw,message",
        [
            ("", "DOI is required and must be a string"),
            (None, "DOI is required and must be a string"),
            (123, "DOI is required and must be a string"),
            ("   ", "DOI cannot be empty"),
            ("10.12/abc", "Invalid DOI format"),
            ("https://example.com/paper", "Invalid DOI format"),
        ],
    )
    def test_validate_doi_rejects(self, raw, message):
        with pytest.raises(InvalidDOIError, match=message):
            validate_doi(raw)


class TestCrossrefMapping:
    @pytest.mark.parametrize(
        "parts,expected",
        [
            ([[2020, 5, 17]], date(2020, 5, 17)),
            ([[2020, 5]], date(2020, 5, 1)),
            ([[2020]], date(2020, 1, 1)),
            ([[999]], None),
            ([[2020, 13, 1]], None),
            ([[None]], None),
            ([], None),
            (None, None),
        ],
    )
    def test_parse_crossref_date(self, parts, expected):
        assert parse_crossref_date(parts) == expected

    @pytest.mark.parametrize(
        "work,expected",
        [
            ({"page": "436-444"}, "436-444"),
            ({"first-page": "10", "last-page": "20"}, "10-20"),
            ({"first-page": "10"}, "10"),
            ({}, None),
        ],
    )
    def test_extract_pages(self, work, expected):
        assert extract_pages(work) == expected

    @pytest.mark.parametrize(
        "crossref_type,expected",
        [
            ("journal-article", ReferenceType.JOURNAL_ARTICLE),
            ("proceedings-article", ReferenceType.CONFERENCE_PAPER),
            ("book-chapter", ReferenceType.BOOK_CHAPTER),
            ("dissertation", ReferenceType.THESIS),
            ("posted-content", ReferenceType.OTHER),
            (None, ReferenceType.OTHER),
        ],
    )
    def test_map_crossref_type(self, crossref_type, expected):
        assert map_crossref_type(crossref_type) is expected

    def test_authors_skip_nameless_entries(self):
        authors = parse_crossref_authors(CROSSREF_WORK["author"])
        assert [a.full_name for a in authors] == ["Yann LeCun", "Yoshua Bengio Jr."]
        assert parse_crossref_authors("not a list") == []

    def test_confidence(self):
        assert calculate_doi_confidence({}) == pytest.approx(0.8)
        assert calculate_doi_confidence(CROSSREF_WORK) == pytest.approx(1.0)

    def test_transform_work(self):
        metadata = transform_crossref_work(CROSSREF_WORK, "10.1038/nature14539")

        assert metadata.title == "Deep learning"
        assert metadata.publication_date == date(2015, 5, 28)
        assert metadata.journal == "Nature"
        assert metadata.volume == "521"
        assert metadata.pages == "436-444"
        assert metadata.abstract == "Deep learning allows computational models."
        assert metadata.keywords == ["Multidisciplinary"]
        assert metadata.type is ReferenceType.JOURNAL_ARTICLE
        assert metadata.url == "http://dx.doi.org/10.1038/nature14539"

    @pytest.mark.parametrize("titles", [[None], [""], [], None])
    def test_missing_first_title_stays_none(self, titles):
        work = {"title": titles, "container-title": [None], "issued": {"date-parts": [[2001]]}}
        metadata = transform_crossref_work(work, "10.1000/x")
        assert metadata.title is None
        assert metadata.journal is None

    def test_transform_defaults_url_to_resolver(self):
        metadata = transform_crossref_work({"title": ["T"], "issued": {"date-parts": [[2001]]}}, "10.1000/x")
        assert metadata.url == "https://doi.org/10.1000/x"
        assert metadata.publication_date == date(2001, 1, 1)


class TestDoiMetadataExtractor:
    @pytest.mark.asyncio
    async def test_extracts_metadata(self):
        session = FakeSession([FakeResponse(200, json_data={"status": "ok", "message": CROSSREF_WORK})])

        metadata = await _extractor(session).extract_doi_metadata("doi:10.1038/nature14539")

        assert metadata.doi == "10.1038/nature14539"
        assert metadata.title == "Deep learning"
        _, url, kwargs = session.calls[0]
        assert url == "https://api.crossref.test/works/10.1038%2Fnature14539"
        assert kwargs["headers"]["User-Agent"] == "RefScoutTest/1.0 (mailto:team@example.org)"

    @pytest.mark.asyncio
    async def test_invalid_doi_makes_no_request(self):
        session = FakeSession()
        with pytest.raises(InvalidDOIError):
            await _extractor(session).extract_doi_metadata("not-a-doi")
        assert session.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,error_type,retryable",
        [
            (FakeResponse(404, reason="Not Found"), DOINotFoundError, False),
            (FakeResponse(429), RateLimitedError, True),
            (FakeResponse(500, reason="Internal Server Error"), MetadataExtractionError, True),
            (asyncio.TimeoutError(), ExtractionTimeoutError, True),
            (aiohttp.ClientConnectionError("reset"), MetadataExtractionError, True),
        ],
    )
    async def test_failures(self, response, error_type, retryable):
        session = FakeSession([response])
        with pytest.raises(error_type) as excinfo:
            await _extractor(session).extract_doi_metadata("10.1000/xyz123")
        assert excinfo.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_not_found_message(self):
        session = FakeSession([FakeResponse(404)])
        with pytest.raises(DOINotFoundError, match="DOI not found: 10.1000/xyz123"):
            await _extractor(session).extract_doi_metadata("10.1000/xyz123")

    @pytest.mark.asyncio
    async def test_missing_message_is_invalid_response(self):
        session = FakeSession([FakeResponse(200, json_data={"status": "ok"})])
        with pytest.raises(MetadataExtractionError, match="Invalid response from CrossRef API"):
            await _extractor(session).extract_doi_metadata("10.1000/xyz123")

    @pytest.mark.asyncio
    async def test_empty_work_has_no_meaningful_metadata(self):
        session = FakeSession([FakeResponse(200, json_data={"message": {"publisher": "Nobody"}})])
        with pytest.raises(NoMeaningfulMetadataError):
            await _extractor(session).extract_doi_metadata("10.1000/xyz123")

    @pytest.mark.asyncio
    async def test_batch_preserves_order_and_reports_errors(self):
        def respond(url, kwargs):
            if "nature14539" in url:
                return FakeResponse(200, json_data={"message": CROSSREF_WORK})
            return FakeResponse(404)

        session = FakeSession([respond])

        results = await _extractor(session).extract_multiple_doi_metadata(
            ["10.1038/nature14539", "bad", "10.1000/missing"]
        )

        assert [r.doi for r in results] == ["10.1038/nature14539", "bad", "10.1000/missing"]
        assert results[0].metadata.title == "Deep learning"
        assert "Invalid DOI format" in results[1].error
        assert results[2].error == "DOI not found: 10.1000/missing"

    @pytest.mark.asyncio
    async def test_batch_caps_requests_in_flight(self):
        extractor = DoiMetadataExtractor(FakeSession(), max_concurrency=3)
        in_flight = 0
        peak = 0

        async def tracked(doi):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return transform_crossref_work(CROSSREF_WORK, doi)

        extractor.extract_doi_metadata = tracked

        results = await extractor.extract_multiple_doi_metadata([f"10.1000/item{i}" for i in range(10)])

        assert all(r.metadata is not None for r in results)
        assert peak == 3

    @pytest.mark.asyncio
    async def test_accessibility_check(self):
        session = FakeSession(head_responses=[FakeResponse(200)])
        result = await _extractor(session).check_doi_accessibility("10.1000/xyz123")
        assert result.accessible is True
        assert session.calls[0][0] == "HEAD"

    @pytest.mark.asyncio
    async def test_accessibility_reports_status_and_errors(self):
        extractor = _extractor(FakeSession(head_responses=[FakeResponse(404)]))
        assert (await extractor.check_doi_accessibility("10.1000/xyz123")).error == "HTTP 404"

        broken = _extractor(FakeSession(head_responses=[aiohttp.ClientConnectionError("refused")]))
        result = await broken.check_doi_accessibility("10.1000/xyz123")
        assert result.accessible is False
        assert result.error == "refused"

        invalid = await _extractor(FakeSession()).check_doi_accessibility("nope")
        assert invalid.accessible is False
        assert "Invalid DOI format" in invalid.error
