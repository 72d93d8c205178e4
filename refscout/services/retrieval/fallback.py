"""Alternate search providers used when the scraped source is unavailable."""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote_plus

import aiohttp

from .config import ErrorHandlingConfig, FallbackConfig
from .errors import SearchError, SearchErrorType
from .interfaces import FallbackSource
from .models import ScholarResult, SearchOptions
from .parsers import strip_markup


logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_RESULTS = 10
MAX_FALLBACK_RESULTS = 20
DEGRADED_CONFIDENCE = 0.1
DEGRADED_SOURCE = "degraded_mode"

ATOM_NS = {
    "atom": "http://www.w3.org/2005/Atom",
    "arxiv": "http://arxiv.org/schemas/atom",
}


def normalize_source_id(source_id: str) -> str:
    return source_id.strip().lower().replace("_", "-")


def _result_limit(options: SearchOptions) -> int:
    return max(1, min(options.max_results or DEFAULT_FALLBACK_RESULTS, MAX_FALLBACK_RESULTS))


@dataclass
class FallbackOutcome:
    results: List[ScholarResult]
    source: str
    degraded_mode: bool = False
    attempts: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


def filter_complete_results(results: List[ScholarResult]) -> List[ScholarResult]:
    """Keep only records that carry both a title and at least one author."""
    return [r for r in results if r.title and r.title.strip() and r.authors]


def build_degraded_results(query: str, scholar_base_url: str = "https://scholar.google.com/scholar") -> List[ScholarResult]:
    """Placeholder guidance returned when no provider produced anything."""
    year = datetime.now(timezone.utc).year
    return [
        ScholarResult(
            title=f'Search temporarily unavailable: "{query}"',
            authors=["System Message"],
            journal="refscout",
            year=year,
            publication_date=str(year),
            confidence=DEGRADED_CONFIDENCE,
            relevance_score=DEGRADED_CONFIDENCE,
            abstract=(
                "Academic search providers are currently unreachable. Try again later, "
                f'simplify the query, or search manually for: "{query}".'
            ),
            keywords=["search", "unavailable", "retry", "manual"],
            url=f"{scholar_base_url}?q={quote_plus(query)}",
            source=DEGRADED_SOURCE,
        )
    ]


class FallbackSourceBase(FallbackSource):
    """Shared session/timeout plumbing for the built-in providers."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        base_url: str,
        timeout: float = 10.0,
        user_agent: str = "refscout/0.1",
    ) -> None:
        self.session = session
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.user_agent = user_agent

    def _raise_for_status(self, status: int) -> None:
        if status == 429:
            raise SearchError(
                SearchErrorType.RATE_LIMIT,
                f"{self.get_source_name()} rate limited",
                status_code=status,
            )
        if status != 200:
            raise SearchError(
                SearchErrorType.SERVICE_UNAVAILABLE,
                f"{self.get_source_name()} returned HTTP {status}",
                status_code=status,
            )


class SemanticScholarFallback(FallbackSourceBase):
    confidence = 0.7

    def __init__(self, session: aiohttp.ClientSession, *, api_key: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", "https://api.semanticscholar.org/graph/v1/paper/search")
        super().__init__(session, **kwargs)
        self.api_key = api_key

    def get_source_name(self) -> str:
        return "semantic-scholar"

    async def search(self, query: str, options: SearchOptions) -> List[ScholarResult]:
        headers = {"User-Agent": self.user_agent}
        if self.api_key:
            headers["x-api-key"] = self.api_key

        params: Dict[str, Any] = {
            "query": query,
            "limit": _result_limit(options),
            "fields": "title,authors,venue,year,abstract,citationCount,url,externalIds",
        }
        if options.year_start is not None or options.year_end is not None:
            start = options.year_start if options.year_start is not None else ""
            end = options.year_end if options.year_end is not None else ""
            params["year"] = f"{start}-{end}"

        async with self.session.get(self.base_url, params=params, headers=headers, timeout=self.timeout) as response:
            self._raise_for_status(response.status)
            data = await response.json()
        return self._parse_response(data)

    def _parse_response(self, data: Dict[str, Any]) -> List[ScholarResult]:
        results: List[ScholarResult] = []
        for item in (data or {}).get("data") or []:
            title = (item.get("title") or "").strip()
            if not title:
                continue
            external_ids = item.get("externalIds") or {}
            year = item.get("year")
            results.append(ScholarResult(
                title=title,
                authors=[a["name"] for a in item.get("authors") or [] if a.get("name")],
                year=year,
                journal=item.get("venue") or None,
                doi=external_ids.get("DOI"),
                url=item.get("url"),
                abstract=item.get("abstract") or None,
                publication_date=str(year) if year else None,
                confidence=self.confidence,
                relevance_score=0.7,
                citation_count=item.get("citationCount") or 0,
                source=self.get_source_name(),
            ))
        return results


class CrossrefFallback(FallbackSourceBase):
    confidence = 0.6

    def __init__(self, session: aiohttp.ClientSession, *, contact_email: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", "https://api.crossref.org/works")
        super().__init__(session, **kwargs)
        self.contact_email = contact_email

    def get_source_name(self) -> str:
        return "crossref"

    async def search(self, query: str, options: SearchOptions) -> List[ScholarResult]:
        params: Dict[str, Any] = {
            "query": query.strip()[:400],
            "rows": _result_limit(options),
            "select": "DOI,title,author,container-title,issued,abstract,URL,publisher,is-referenced-by-count",
        }
        filters = []
        if options.year_start is not None:
            filters.append(f"from-pub-date:{options.year_start}")
        if options.year_end is not None:
            filters.append(f"until-pub-date:{options.year_end}")
        if filters:
            params["filter"] = ",".join(filters)

        headers = {"User-Agent": self.user_agent}
        if self.contact_email:
            params["mailto"] = self.contact_email
            headers["User-Agent"] = f"{self.user_agent} (mailto:{self.contact_email})"

        async with self.session.get(self.base_url, params=params, headers=headers, timeout=self.timeout) as response:
            self._raise_for_status(response.status)
            data = await response.json()
        return self._parse_response(data)

    def _parse_response(self, data: Dict[str, Any]) -> List[ScholarResult]:
        items = ((data or {}).get("message") or {}).get("items") or []
        results: List[ScholarResult] = []
        for item in items:
            titles = item.get("title") or []
            title = (titles[0] if titles else "").strip()
            if not title:
                continue

            authors = []
            for author in item.get("author") or []:
                name = " ".join(filter(None, [author.get("given"), author.get("family")])).strip()
                if name:
                    authors.append(name)

            year = None
            parts = ((item.get("issued") or {}).get("date-parts") or [[]])[0]
            if parts and parts[0]:
                try:
                    year = int(parts[0])
                except (TypeError, ValueError):
                    year = None

            containers = item.get("container-title") or []
            results.append(ScholarResult(
                title=title,
                authors=authors,
                year=year,
                journal=containers[0] if containers else None,
                doi=item.get("DOI"),
                url=item.get("URL"),
                abstract=strip_markup(item.get("abstract")),
                publication_date=str(year) if year else None,
                confidence=self.confidence,
                relevance_score=0.6,
                citation_count=item.get("is-referenced-by-count") or 0,
                publisher=item.get("publisher"),
                source=self.get_source_name(),
            ))
        return results


class ArxivFallback(FallbackSourceBase):
    confidence = 0.5

    def __init__(self, session: aiohttp.ClientSession, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", "http://export.arxiv.org/api/query")
        super().__init__(session, **kwargs)

    def get_source_name(self) -> str:
        return "arxiv"

    async def search(self, query: str, options: SearchOptions) -> List[ScholarResult]:
        params = {
            "search_query": f"all:{query}",
            "start": 0,
            "max_results": _result_limit(options),
        }
        headers = {"User-Agent": self.user_agent}
        async with self.session.get(self.base_url, params=params, headers=headers, timeout=self.timeout) as response:
            self._raise_for_status(response.status)
            content = await response.text()
        return self._parse_response(content)

    def _parse_response(self, xml_content: str) -> List[ScholarResult]:
        try:
            root = ET.fromstring(xml_content)
        except ET.ParseError as exc:
            raise SearchError(SearchErrorType.PARSING, f"Invalid arXiv feed: {exc}", original_error=exc) from exc

        results: List[ScholarResult] = []
        for entry in root.findall("atom:entry", ATOM_NS):
            title = " ".join((entry.findtext("atom:title", default="", namespaces=ATOM_NS)).split())
            if not title:
                continue

            authors = [
                name.strip()
                for name in (a.findtext("atom:name", default="", namespaces=ATOM_NS) for a in entry.findall("atom:author", ATOM_NS))
                if name and name.strip()
            ]

            year = None
            published = entry.findtext("atom:published", default="", namespaces=ATOM_NS)
            if published[:4].isdigit():
                year = int(published[:4])

            url = None
            for link in entry.findall("atom:link", ATOM_NS):
                href = link.get("href", "")
                if "arxiv.org/abs/" in href:
                    url = href
                    break
            if url is None:
                url = entry.findtext("atom:id", default=None, namespaces=ATOM_NS)

            summary = " ".join(entry.findtext("atom:summary", default="", namespaces=ATOM_NS).split())
            results.append(ScholarResult(
                title=title,
                authors=authors,
                year=year,
                journal="arXiv",
                doi=entry.findtext("arxiv:doi", default=None, namespaces=ATOM_NS),
                url=url,
                abstract=summary or None,
                publication_date=str(year) if year else None,
                confidence=self.confidence,
                relevance_score=0.5,
                source=self.get_source_name(),
            ))
        return results


def build_default_fallback_sources(session: aiohttp.ClientSession, settings: Any = None) -> Dict[str, FallbackSource]:
    """Instantiate the built-in providers keyed by their source id."""
    if settings is None:
        from refscout.core.config import settings as default_settings

        settings = default_settings

    common = {"user_agent": settings.API_USER_AGENT}
    sources: List[FallbackSource] = [
        SemanticScholarFallback(
            session,
            api_key=settings.SEMANTIC_SCHOLAR_API_KEY,
            base_url=settings.SEMANTIC_SCHOLAR_API_URL,
            **common,
        ),
        CrossrefFallback(
            session,
            contact_email=settings.CONTACT_EMAIL,
            base_url=settings.CROSSREF_SEARCH_URL,
            **common,
        ),
        ArxivFallback(session, base_url=settings.ARXIV_API_URL, **common),
    ]
    return {normalize_source_id(s.get_source_name()): s for s in sources}


class FallbackCoordinator:
    """Try configured providers in order until one returns results.

    The walk is bounded by ``max_fallback_attempts`` providers and by
    ``fallback_timeout`` milliseconds overall. When nothing succeeds the
    outcome carries the degraded placeholder list.
    """

    def __init__(
        self,
        config: Optional[FallbackConfig] = None,
        sources: Optional[Mapping[str, FallbackSource]] = None,
        error_handling: Optional[ErrorHandlingConfig] = None,
        *,
        scholar_base_url: str = "https://scholar.google.com/scholar",
        result_filter: Callable[[List[ScholarResult]], List[ScholarResult]] = filter_complete_results,
    ) -> None:
        self.config = config or FallbackConfig()
        self.result_filter = result_filter
        self.error_handling = error_handling or ErrorHandlingConfig()
        self.scholar_base_url = scholar_base_url
        self._sources: Dict[str, FallbackSource] = {
            normalize_source_id(key): source for key, source in (sources or {}).items()
        }

    @property
    def source_ids(self) -> List[str]:
        return list(self._sources)

    def register_source(self, source: FallbackSource) -> None:
        self._sources[normalize_source_id(source.get_source_name())] = source

    def degraded(self, query: str, errors: Optional[List[str]] = None, attempts: int = 0) -> FallbackOutcome:
        logger.warning("All fallback sources failed for query %r; returning degraded placeholder", query)
        return FallbackOutcome(
            results=build_degraded_results(query, self.scholar_base_url),
            source=DEGRADED_SOURCE,
            degraded_mode=True,
            attempts=attempts,
            errors=list(errors or []),
        )

    async def run(self, query: str, options: Optional[SearchOptions] = None) -> FallbackOutcome:
        options = options or SearchOptions()
        if not self.config.enabled:
            return self.degraded(query, ["Fallback search is disabled"])

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.fallback_timeout / 1000.0
        attempts = 0
        errors: List[str] = []

        for source_id in self.config.fallback_sources:
            if attempts >= self.config.max_fallback_attempts:
                break
            source = self._sources.get(normalize_source_id(source_id))
            if source is None:
                logger.debug("Skipping unknown fallback source %s", source_id)
                continue

            remaining = deadline - loop.time()
            if remaining <= 0:
                errors.append("Fallback timeout exceeded")
                break

            attempts += 1
            try:
                results = await asyncio.wait_for(source.search(query, options), timeout=remaining)
            except asyncio.TimeoutError:
                errors.append(f"{source_id}: timed out")
                logger.warning("Fallback source %s timed out", source_id)
                continue
            except Exception as exc:
                errors.append(f"{source_id}: {exc}")
                if self.error_handling.enable_detailed_logging:
                    logger.warning("Fallback source %s failed: %s", source_id, exc, exc_info=True)
                else:
                    logger.warning("Fallback source %s failed: %s", source_id, exc)
                continue

            results = self.result_filter(results)
            if results:
                logger.info("Fallback source %s returned %s results", source_id, len(results))
                return FallbackOutcome(
                    results=results,
                    source=normalize_source_id(source_id),
                    attempts=attempts,
                    errors=errors,
                )
            logger.info("Fallback source %s returned no usable results", source_id)

        return self.degraded(query, errors, attempts)
