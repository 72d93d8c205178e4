"""Bibliographic metadata scraped from web pages (Highwire, Open Graph, Dublin Core)."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import unquote, urljoin, urlparse, urlunparse

import aiohttp
from bs4 import BeautifulSoup

from .errors import (
    ExtractionTimeoutError,
    InvalidURLError,
    MetadataExtractionError,
    NoMeaningfulMetadataError,
    NotHtmlDocumentError,
    PrivateURLError,
    RateLimitedError,
    SourceNotFoundError,
)
from .models import Author, ReferenceMetadata, ReferenceType
from .parsers import clean_text


logger = logging.getLogger(__name__)

HOSTNAME_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z]{2,}$", re.IGNORECASE)
ACADEMIC_TLD_RE = re.compile(r"\.(edu|org|gov)$", re.IGNORECASE)
PUBLISHER_HOST_RE = re.compile(r"(^|\.)(springer|elsevier|wiley|nature|science|ieee|acm)\.", re.IGNORECASE)

FALLBACK_CONFIDENCE = 0.2
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
MAX_REDIRECTS = 5

BLOCKED_IPV4_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),
]

BLOCKED_IPV6_NETWORKS = [
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y-%m", "%Y/%m", "%B %d, %Y", "%d %B %Y", "%b %d, %Y", "%d %b %Y")


def is_ip_blocked(ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]) -> bool:
    if isinstance(ip, ipaddress.IPv4Address):
        return any(ip in net for net in BLOCKED_IPV4_NETWORKS)
    if any(ip in net for net in BLOCKED_IPV6_NETWORKS):
        return True
    if ip.ipv4_mapped:
        return any(ip.ipv4_mapped in net for net in BLOCKED_IPV4_NETWORKS)
    return False


def validate_and_sanitize_url(url: object) -> str:
    """Return a normalized http(s) URL or raise ``InvalidURLError``.

    A missing scheme becomes ``https://``. Hosts must be a dotted name with an
    alphabetic TLD or a public IP literal; localhost and private, loopback or
    link-local addresses raise ``PrivateURLError``. No DNS lookups happen here.
    """
    if not url or not isinstance(url, str):
        raise InvalidURLError("URL is required and must be a string")
    candidate = url.strip()
    if not candidate:
        raise InvalidURLError("URL cannot be empty")

    if "://" not in candidate:
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidURLError("Only HTTP and HTTPS protocols are allowed")

    try:
        hostname = parsed.hostname
    except ValueError as exc:
        raise InvalidURLError("Invalid URL format") from exc
    if not hostname:
        raise InvalidURLError("Invalid URL format")

    if hostname == "localhost" or hostname.endswith(".localhost"):
        raise PrivateURLError("Private or local URLs are not allowed")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        ip = None

    if ip is not None:
        if is_ip_blocked(ip):
            raise PrivateURLError("Private or local URLs are not allowed")
    elif not HOSTNAME_RE.match(hostname):
        raise InvalidURLError("Invalid URL format")

    return urlunparse(parsed._replace(scheme=parsed.scheme.lower(), path=parsed.path or "/"))


async def resolve_host(hostname: str) -> List[str]:
    """Resolve ``hostname`` to every address it maps to."""
    loop = asyncio.get_running_loop()
    addr_info = await loop.getaddrinfo(hostname, None, family=socket.AF_UNSPEC, type=socket.SOCK_STREAM)
    return [str(sockaddr[0]) for _, _, _, _, sockaddr in addr_info]


def collect_meta_tags(soup: BeautifulSoup) -> Dict[str, List[str]]:
    """Map lower-cased ``name``/``property`` attributes to their contents, in document order."""
    tags: Dict[str, List[str]] = {}
    for meta in soup.find_all("meta"):
        key = meta.get("name") or meta.get("property")
        content = meta.get("content")
        if not key or content is None:
            continue
        value = clean_text(content)
        if value:
            tags.setdefault(key.strip().lower(), []).append(value)
    return tags


def _first(tags: Dict[str, List[str]], *names: str) -> Optional[str]:
    for name in names:
        values = tags.get(name)
        if values:
            return values[0]
    return None


def parse_author_name(name: str) -> Optional[Author]:
    name = clean_text(name)
    if not name:
        return None

    if "," in name:
        last, _, rest = name.partition(",")
        last, rest = last.strip(), rest.strip()
        if last and rest:
            return Author(first_name=rest, last_name=last)

    parts = name.replace(",", " ").split()
    if len(parts) == 1:
        return Author(first_name="", last_name=parts[0])
    if len(parts) == 2:
        return Author(first_name=parts[0], last_name=parts[1])
    return Author(first_name=parts[0], middle_name=" ".join(parts[1:-1]), last_name=parts[-1])


def parse_authors(author_strings: List[str]) -> List[Author]:
    """Parse author meta values; one value may list several names."""
    authors: List[Author] = []
    for value in author_strings:
        value = clean_text(value)
        if not value:
            continue
        # "Last, First" is a single author
        if "," in value and not re.search(r"[,;].*[,;]", value):
            names = [value]
        else:
            names = [n.strip() for n in re.split(r"[,;]|\s+and\s+|\s+&\s+", value, flags=re.IGNORECASE)]
        for name in names:
            author = parse_author_name(name) if name else None
            if author is not None:
                authors.append(author)
    return authors


def parse_date(value: Optional[str]) -> Optional[date]:
    value = clean_text(value)
    if not value:
        return None

    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue

    match = re.search(r"\b(\d{4})\b", value)
    if match:
        year = int(match.group(1))
        if 1900 <= year <= datetime.now(timezone.utc).year + 1:
            return date(year, 1, 1)
    return None


def determine_reference_type(url: str, metadata: ReferenceMetadata, og_type: Optional[str] = None) -> ReferenceType:
    url_lower = url.lower()
    host = urlparse(url_lower).hostname or ""

    if PUBLISHER_HOST_RE.search(host) or metadata.journal:
        return ReferenceType.JOURNAL_ARTICLE
    if (og_type or "").lower() == "thesis" or "thesis" in url_lower or "dissertation" in url_lower:
        return ReferenceType.THESIS
    if ACADEMIC_TLD_RE.search(host):
        if "conference" in url_lower or "proceedings" in url_lower:
            return ReferenceType.CONFERENCE_PAPER
        return ReferenceType.REPORT
    if metadata.isbn or "book" in url_lower or "isbn" in url_lower:
        return ReferenceType.BOOK
    return ReferenceType.WEBSITE


def calculate_url_confidence(metadata: ReferenceMetadata) -> float:
    score = 0.3
    if metadata.title:
        score += 0.3
    if metadata.authors:
        score += 0.2
    if metadata.publication_date:
        score += 0.1
    if metadata.journal:
        score += 0.1
    if metadata.doi:
        score += 0.1
    if metadata.publisher:
        score += 0.05
    if metadata.volume or metadata.issue:
        score += 0.05
    return min(score, 1.0)


def parse_html_metadata(html: str, url: str) -> ReferenceMetadata:
    """Extract metadata from ``html``; title priority is citation_title, og:title, DC.title, <title>."""
    soup = BeautifulSoup(html or "", "html.parser")
    tags = collect_meta_tags(soup)

    title = _first(tags, "citation_title", "og:title", "dc.title")
    if not title and soup.title is not None:
        title = clean_text(soup.title.get_text()) or None

    author_values = tags.get("citation_author", []) + tags.get("dc.creator", []) + tags.get("author", [])
    identifier = _first(tags, "dc.identifier")

    doi = _first(tags, "citation_doi")
    if not doi and identifier and not identifier.lower().startswith("isbn"):
        doi = identifier
    isbn = _first(tags, "citation_isbn")
    if not isbn and identifier and "isbn" in identifier.lower():
        isbn = identifier

    keywords_value = _first(tags, "keywords", "citation_keywords")
    keywords = [k.strip() for k in re.split(r"[,;]", keywords_value)] if keywords_value else []

    metadata = ReferenceMetadata(
        title=title,
        authors=parse_authors(author_values),
        publication_date=parse_date(_first(tags, "citation_publication_date", "citation_date", "dc.date")),
        journal=_first(tags, "citation_journal_title"),
        volume=_first(tags, "citation_volume"),
        issue=_first(tags, "citation_issue"),
        pages=_first(tags, "citation_firstpage"),
        publisher=_first(tags, "citation_publisher", "dc.publisher", "og:site_name"),
        isbn=isbn,
        doi=doi,
        url=url,
        abstract=_first(tags, "og:description", "dc.description", "description"),
        keywords=[k for k in keywords if k],
    )
    metadata.type = determine_reference_type(url, metadata, _first(tags, "og:type"))
    metadata.confidence = calculate_url_confidence(metadata)
    return metadata


def fallback_title(html: str, url: str) -> Optional[str]:
    """Best-effort title from the first <h1>, else the last URL path segment."""
    soup = BeautifulSoup(html or "", "html.parser")
    h1 = soup.find("h1")
    if h1 is not None:
        text = clean_text(h1.get_text(" "))
        if text:
            return text

    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return None
    slug = re.sub(r"\.[^.]*$", "", unquote(segments[-1]))
    slug = re.sub(r"[-_]+", " ", slug).strip()
    return slug.title() or None


class UrlMetadataExtractor:
    """Fetch a public web page and read its bibliographic meta tags."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        resolver: Optional[Callable[[str], Awaitable[List[str]]]] = None,
        max_redirects: int = MAX_REDIRECTS,
    ) -> None:
        from refscout.core.config import settings

        self.timeout = timeout if timeout is not None else settings.URL_REQUEST_TIMEOUT
        self.max_redirects = max(0, max_redirects)
        self._resolver = resolver
        self.user_agent = user_agent or f"Mozilla/5.0 (compatible; {settings.API_USER_AGENT})"
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "UrlMetadataExtractor":
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
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }

    async def _check_resolved_host(self, url: str) -> None:
        hostname = urlparse(url).hostname or ""
        try:
            ipaddress.ip_address(hostname)
            return
        except ValueError:
            pass

        resolver = self._resolver or resolve_host
        try:
            addresses = await resolver(hostname)
        except OSError as exc:
            raise MetadataExtractionError(f"DNS resolution failed for {hostname}: {exc}") from exc
        if not addresses:
            raise MetadataExtractionError(f"Could not resolve hostname: {hostname}")
        for address in addresses:
            try:
                blocked = is_ip_blocked(ipaddress.ip_address(address.split("%", 1)[0]))
            except ValueError:
                blocked = True
            if blocked:
                logger.warning("Refusing to fetch %s: %s resolves to blocked address %s", url, hostname, address)
                raise PrivateURLError("Private or local URLs are not allowed")

    async def fetch_html(self, url: str) -> str:
        """GET ``url`` and return its HTML body.

        Redirects are followed by hand, up to ``max_redirects`` hops, and
        every hop is re-validated and its resolved addresses checked.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        current_url = url
        html = ""
        try:
            for hop in range(self.max_redirects + 1):
                current_url = validate_and_sanitize_url(current_url)
                await self._check_resolved_host(current_url)
                async with self._get_session().get(
                    current_url, headers=self.headers, timeout=timeout, allow_redirects=False
                ) as response:
                    if response.status in REDIRECT_STATUSES:
                        location = response.headers.get("Location")
                        if not location:
                            raise MetadataExtractionError(f"HTTP {response.status} redirect without Location")
                        if hop >= self.max_redirects:
                            raise MetadataExtractionError(f"Too many redirects fetching {url}")
                        current_url = urljoin(current_url, location)
                        logger.debug("Following redirect to %s", current_url)
                        continue
                    if response.status in (404, 410):
                        raise SourceNotFoundError(f"HTTP {response.status}: {response.reason or 'Not Found'}")
                    if response.status == 429:
                        raise RateLimitedError("Rate limit exceeded while fetching URL")
                    if not 200 <= response.status < 300:
                        raise MetadataExtractionError(f"HTTP {response.status}: {response.reason or 'request failed'}")

                    content_type = (response.headers.get("Content-Type") or "").lower()
                    if not any(t in content_type for t in HTML_CONTENT_TYPES):
                        raise NotHtmlDocumentError("URL does not point to an HTML document")
                    html = await response.text()
                    break
        except MetadataExtractionError:
            raise
        except asyncio.TimeoutError as exc:
            raise ExtractionTimeoutError("Request timeout while fetching URL") from exc
        except aiohttp.ClientError as exc:
            raise MetadataExtractionError(f"Failed to extract metadata from URL: {exc}") from exc

        if not html or not html.strip():
            raise MetadataExtractionError("Empty response from URL")
        return html

    async def extract_url_metadata(self, url: str) -> ReferenceMetadata:
        sanitized = validate_and_sanitize_url(url)
        html = await self.fetch_html(sanitized)
        metadata = parse_html_metadata(html, sanitized)

        if not metadata.has_meaningful_content():
            title = fallback_title(html, sanitized)
            if not title:
                raise NoMeaningfulMetadataError("No meaningful metadata found at URL")
            logger.debug("Using fallback title for %s", sanitized)
            metadata.title = title
            metadata.confidence = FALLBACK_CONFIDENCE

        return metadata
