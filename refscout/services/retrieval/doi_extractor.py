"""Bibliographic metadata lookup for DOIs via the Crossref REST API."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .errors import (
    DOINotFoundError,
    ExtractionTimeoutError,
    InvalidDOIError,
    MetadataExtractionError,
    NoMeaningfulMetadataError,
    RateLimitedError,
)
from .models import (
    Author,
    DoiAccessibility,
    DoiBatchResult,
    ReferenceMetadata,
    ReferenceType,
)
from .parsers import is_valid_doi, strip_markup


logger = logging.getLogger(__name__)

DOI_PREFIX_RE = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)

CROSSREF_TYPE_MAP = {
    "journal-article": ReferenceType.JOURNAL_ARTICLE,
    "book": ReferenceType.BOOK,
    "monograph": ReferenceType.BOOK,
    "edited-book": ReferenceType.BOOK,
    "book-chapter": ReferenceType.BOOK_CHAPTER,
    "proceedings-article": ReferenceType.CONFERENCE_PAPER,
    "conference-paper": ReferenceType.CONFERENCE_PAPER,
    "dissertation": ReferenceType.THESIS,
    "report": ReferenceType.REPORT,
    "patent": ReferenceType.PATENT,
    "other": ReferenceType.OTHER,
}

__all__ = [
    "DoiMetadataExtractor",
    "calculate_doi_confidence",
    "extract_pages",
    "is_valid_doi",
    "map_crossref_type",
    "normalize_doi",
    "parse_crossref_authors",
    "parse_crossref_date",
    "transform_crossref_work",
    "validate_doi",
]


def normalize_doi(doi: str) -> str:
    """Strip whitespace and ``https://doi.org/`` / ``doi:`` prefixes."""
    return DOI_PREFIX_RE.sub("", doi.strip()).strip()


def validate_doi(doi: Any) -> str:
    """Return the normalized DOI or raise ``InvalidDOIError``."""
    if not doi or not isinstance(doi, str):
        raise InvalidDOIError("DOI is required and must be a string")
    if not doi.strip():
        raise InvalidDOIError("DOI cannot be empty")

    normalized = normalize_doi(doi)
    if not is_valid_doi(normalized):
        raise InvalidDOIError("Invalid DOI format. DOI should be in format 10.xxxx/xxxxx")
    return normalized


def map_crossref_type(crossref_type: Optional[str]) -> ReferenceType:
    return CROSSREF_TYPE_MAP.get(crossref_type or "", ReferenceType.OTHER)


def parse_crossref_authors(raw_authors: Any) -> List[Author]:
    if not isinstance(raw_authors, list):
        return []
    authors = []
    for raw in raw_authors:
        if not isinstance(raw, dict) or not (raw.get("given") or raw.get("family")):
            continue
        authors.append(Author(
            first_name=raw.get("given") or "",
            last_name=raw.get("family") or "",
            suffix=raw.get("suffix") or None,
        ))
    return authors


def parse_crossref_date(date_parts: Any) -> Optional[date]:
    """Convert Crossref ``date-parts`` into a date; month and day default to 1."""
    if not isinstance(date_parts, list) or not date_parts:
        return None
    first = date_parts[0]
    if not isinstance(first, list) or not first or first[0] is None:
        return None

    try:
        year = int(first[0])
        month = int(first[1]) if len(first) > 1 and first[1] else 1
        day = int(first[2]) if len(first) > 2 and first[2] else 1
    except (TypeError, ValueError):
        return None

    if year < 1000 or year > datetime.now(timezone.utc).year + 10:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_pages(work: Dict[str, Any]) -> Optional[str]:
    if work.get("page"):
        return str(work["page"])
    first_page = work.get("first-page")
    last_page = work.get("last-page")
    if first_page and last_page:
        return f"{first_page}-{last_page}"
    if first_page:
        return str(first_page)
    return None


def _first(values: Any) -> Optional[str]:
    if isinstance(values, list) and values and values[0]:
        return str(values[0])
    return None


def calculate_doi_confidence(work: Dict[str, Any]) -> float:
    score = 0.8
    if _first(work.get("title")):
        score += 0.1
    if isinstance(work.get("author"), list) and work["author"]:
        score += 0.05
    if work.get("published-print") or work.get("published-online"):
        score += 0.02
    if _first(work.get("container-title")):
        score += 0.02
    if work.get("publisher"):
        score += 0.01
    return min(score, 1.0)


def transform_crossref_work(work: Dict[str, Any], doi: str) -> ReferenceMetadata:
    """Map a Crossref ``message`` object onto ``ReferenceMetadata``."""
    published = work.get("published-print") or work.get("published-online") or work.get("issued") or {}
    subjects = work.get("subject")

    return ReferenceMetadata(
        title=_first(work.get("title")),
        authors=parse_crossref_authors(work.get("author")),
        publication_date=parse_crossref_date(published.get("date-parts")) if isinstance(published, dict) else None,
        journal=_first(work.get("container-title")),
        volume=work["volume"] if isinstance(work.get("volume"), str) else None,
        issue=work["issue"] if isinstance(work.get("issue"), str) else None,
        pages=extract_pages(work),
        publisher=work["publisher"] if isinstance(work.get("publisher"), str) else None,
        isbn=_first(work.get("ISBN")),
        doi=doi,
        url=work.get("URL") or f"https://doi.org/{doi}",
        abstract=strip_markup(work["abstract"]) if isinstance(work.get("abstract"), str) else None,
        keywords=[str(s) for s in subjects] if isinstance(subjects, list) else [],
        type=map_crossref_type(work.get("type")),
        confidence=calculate_doi_confidence(work),
    )


class DoiMetadataExtractor:
    """Resolve DOIs against Crossref ``/works/{doi}``."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        contact_email: Optional[str] = None,
        user_agent: Optional[str] = None,
        max_concurrency: int = 5,
    ) -> None:
        from refscout.core.config import settings

        self.api_base = api_base or settings.CROSSREF_API_BASE
        if not self.api_base.endswith("/"):
            self.api_base += "/"
        self.timeout = timeout if timeout is not None else settings.DOI_REQUEST_TIMEOUT
        self.probe_timeout = probe_timeout if probe_timeout is not None else settings.DOI_PROBE_TIMEOUT
        self.contact_email = contact_email or settings.CONTACT_EMAIL
        self.user_agent = user_agent or settings.API_USER_AGENT
        self.max_concurrency = max(1, max_concurrency)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "DoiMetadataExtractor":
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

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "User-Agent": f"{self.user_agent} (mailto:{self.contact_email})",
            "Accept": "application/json",
        }

    def work_url(self, doi: str) -> str:
        return f"{self.api_base}{quote(doi, safe='')}"

    async def extract_doi_metadata(self, doi: str) -> ReferenceMetadata:
        normalized = validate_doi(doi)
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with session.get(self.work_url(normalized), headers=self.headers, timeout=timeout) as response:
                if response.status == 404:
                    raise DOINotFoundError(f"DOI not found: {normalized}")
                if response.status == 429:
                    raise RateLimitedError("Rate limit exceeded. Please try again later.")
                if response.status != 200:
                    raise MetadataExtractionError(
                        f"CrossRef API error: {response.status} {response.reason or ''}".strip()
                    )
                data = await response.json(content_type=None)
        except MetadataExtractionError:
            raise
        except asyncio.TimeoutError as exc:
            raise ExtractionTimeoutError("Request timeout while fetching DOI metadata") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise MetadataExtractionError(f"Failed to extract DOI metadata: {exc}") from exc

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            raise MetadataExtractionError("Invalid response from CrossRef API")

        metadata = transform_crossref_work(message, normalized)
        if not metadata.has_meaningful_content():
            raise NoMeaningfulMetadataError("No meaningful metadata found for DOI")

        logger.debug("Resolved DOI %s (confidence %.2f)", normalized, metadata.confidence)
        return metadata

    async def extract_multiple_doi_metadata(self, dois: List[str]) -> List[DoiBatchResult]:
        sem = asyncio.Semaphore(self.max_concurrency)

        async def extract_single(doi: str) -> DoiBatchResult:
            async with sem:
                try:
                    return DoiBatchResult(doi=doi, metadata=await self.extract_doi_metadata(doi))
                except Exception as exc:
                    logger.debug("DOI extraction failed for %s: %s", doi, exc)
                    return DoiBatchResult(doi=doi, error=str(exc) or exc.__class__.__name__)

        return list(await asyncio.gather(*(extract_single(doi) for doi in dois)))

    async def check_doi_accessibility(self, doi: str) -> DoiAccessibility:
        try:
            normalized = validate_doi(doi)
        except InvalidDOIError as exc:
            return DoiAccessibility(accessible=False, error=str(exc))

        timeout = aiohttp.ClientTimeout(total=self.probe_timeout)
        try:
            async with self._get_session().head(self.work_url(normalized), headers=self.headers, timeout=timeout) as response:
                ok = 200 <= response.status < 300
                return DoiAccessibility(accessible=ok, error=None if ok else f"HTTP {response.status}")
        except asyncio.TimeoutError:
            return DoiAccessibility(accessible=False, error="Accessibility check timed out")
        except aiohttp.ClientError as exc:
            return DoiAccessibility(accessible=False, error=str(exc) or exc.__class__.__name__)
