"""HTML parsing strategies for Google Scholar result pages."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

from .interfaces import ResultParser
from .models import ScholarResult


logger = logging.getLogger(__name__)

DOI_REGEX = re.compile(r"10\.\d{4,}/\S+")

DOI_SEARCH_PATTERNS = [
    re.compile(r"(?:doi\.org/|DOI:\s*)(10\.\d+/[^\s<>\"']+)", re.IGNORECASE),
    re.compile(r"(?:dx\.doi\.org/)(10\.\d+/[^\s<>\"']+)", re.IGNORECASE),
    re.compile(r"\bdoi:\s*(10\.\d+/[^\s<>\"']+)", re.IGNORECASE),
    re.compile(r"\b(10\.\d{4,}/[^\s<>\"']+)"),
]

NO_RESULTS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"did not match any articles",
        r"no results found",
        r"your search.*did not match",
        r"try different keywords",
        r"no articles found",
    )
]

NAVIGATION_WORDS = {
    "home", "search", "about", "help", "settings", "login", "log in", "sign in",
    "sign out", "privacy", "terms", "next", "previous", "more", "cite", "save",
    "pdf", "html", "my profile", "my library", "alerts", "metrics",
    "advanced search", "related articles", "all versions", "cited by",
}

NAVIGATION_TOKENS = {
    token for phrase in NAVIGATION_WORDS for token in phrase.split()
} | {"articles", "versions", "related", "library", "profile", "page", "view", "all"}

ACADEMIC_INDICATORS = (
    "study", "analysis", "research", "investigation", "approach", "method",
    "theory", "model", "learning", "review", "evaluation", "framework",
)

INVALID_ABSTRACT_PATTERNS = [
    re.compile(r"^(pdf|html|full text|download|view|access)$", re.IGNORECASE),
    re.compile(r"^[^a-zA-Z]*$"),
    re.compile(r"^\d+\s*(pages?|pp\.)", re.IGNORECASE),
    re.compile(r"^(abstract|summary):?\s*$", re.IGNORECASE),
    re.compile(r"^see\s+(full|complete)\s+", re.IGNORECASE),
]

INVALID_AUTHOR_PATTERNS = [
    re.compile(r"^\d+$"),
    re.compile(r"^[^a-zA-Z]*$"),
    re.compile(r"^(and|et|al|etc|vol|pp|page|pages)\.?$", re.IGNORECASE),
    re.compile(r"^(doi|isbn|issn|url|http|www)\.?", re.IGNORECASE),
    re.compile(r"^[.,-]+$"),
]

LAST_NAME_RE = re.compile(r"^[A-Z][a-z]*(?:[-'\s][A-Z]?[a-z]*)*$")
INITIALS_RE = re.compile(r"^[A-Z]\.?(?:\s*[A-Z]\.?)*$")
LEADING_MARKERS_RE = re.compile(r"^\s*(?:\[[A-Z]+\]\s*)+")
MAX_AUTHORS = 10
MAX_ALTERNATIVE_RESULTS = 5


def clean_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.replace("\xa0", " ")).strip()


def strip_markup(text: Optional[str]) -> Optional[str]:
    """Drop HTML/JATS tags, returning collapsed text or None."""
    if not text:
        return None
    return clean_text(BeautifulSoup(text, "html.parser").get_text(" ")) or None


def is_valid_doi(doi: Optional[str]) -> bool:
    """True iff ``doi`` looks like ``10.<4+ digits>/<non-blank suffix>``."""
    if not isinstance(doi, str) or not DOI_REGEX.fullmatch(doi):
        return False
    suffix = doi.split("/", 1)[1]
    if re.fullmatch(r"[\s.]+", suffix):
        return False
    if "<" in suffix or ">" in suffix:
        return False
    return True


def is_valid_abstract(text: Optional[str]) -> bool:
    text = clean_text(text)
    if len(text) < 10:
        return False
    if any(p.search(text) for p in INVALID_ABSTRACT_PATTERNS):
        return False
    return len(text.split()) >= 3


def looks_like_paper_title(text: Optional[str]) -> bool:
    text = clean_text(text)
    if len(text) < 10 or len(text) > 200:
        return False

    lower = text.lower()
    if lower in NAVIGATION_WORDS:
        return False

    words = text.split()
    if len(words) < 2:
        return False

    tokens = re.findall(r"[a-z]+", lower)
    if tokens and all(t in NAVIGATION_TOKENS for t in tokens):
        return False

    if any(word in lower for word in ACADEMIC_INDICATORS):
        return True
    return 3 <= len(words) <= 20


def contains_no_results_indicators(html: str) -> bool:
    if not html:
        return False
    return any(p.search(html) for p in NO_RESULTS_PATTERNS)


def looks_like_last_name(text: str) -> bool:
    return len(text) > 1 and bool(LAST_NAME_RE.match(text)) and not looks_like_initials(text)


def looks_like_initials(text: str) -> bool:
    return len(text) <= 10 and bool(INITIALS_RE.match(text))


def is_valid_author_name(author: str) -> bool:
    author = author.strip()
    if len(author) < 2 or len(author) > 100:
        return False
    if any(p.search(author) for p in INVALID_AUTHOR_PATTERNS):
        return False
    return bool(re.search(r"[a-zA-Z]", author))


def split_author_names(authors_string: str) -> List[str]:
    if ";" in authors_string:
        return [a.strip() for a in authors_string.split(";")]

    parts = [p.strip() for p in authors_string.split(",")]
    authors: List[str] = []
    i = 0
    while i < len(parts):
        part = parts[i]
        # "Smith, J." is a single author
        if i < len(parts) - 1 and looks_like_last_name(part) and looks_like_initials(parts[i + 1]):
            authors.append(f"{part}, {parts[i + 1]}")
            i += 2
            continue
        if part:
            authors.append(part)
        i += 1
    return authors


def parse_authors_from_text(author_text: str) -> List[str]:
    """Extract author names from a ``"A, B - Journal, 2020 - host"`` byline."""
    author_text = clean_text(author_text)
    match = re.match(r"^(.*?)\s+-\s+", author_text)
    authors_string = match.group(1).strip() if match else author_text.strip()
    if not authors_string:
        return []

    authors_string = authors_string.replace("…", "").strip(" ,")
    names = [a.strip() for a in split_author_names(authors_string)]
    return [a for a in names if is_valid_author_name(a)][:MAX_AUTHORS]


def extract_journal_from_author_text(author_text: str) -> Optional[str]:
    parts = clean_text(author_text).split(" - ")
    if len(parts) < 2:
        return None
    match = re.match(r"^([^,]+?)(?:,\s*\d{4}|$)", parts[1].strip())
    if not match:
        return None
    journal = match.group(1).strip().replace("…", "").strip()
    if len(journal) > 3 and not journal.isdigit() and journal.lower() not in {"and", "et", "al"}:
        return journal
    return None


def extract_year(text: str) -> Optional[int]:
    current_year = datetime.now(timezone.utc).year
    for match in re.finditer(r"\b(?:19|20)\d{2}\b", text or ""):
        year = int(match.group(0))
        if 1900 <= year <= current_year + 1:
            return year
    return None


def extract_doi(text: str) -> Optional[str]:
    for pattern in DOI_SEARCH_PATTERNS:
        for match in pattern.finditer(text or ""):
            doi = match.group(1).strip().rstrip(".,;)")
            if is_valid_doi(doi):
                return doi
    return None


def unwrap_scholar_url(href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    if href.startswith("/scholar_url?"):
        target = parse_qs(urlparse(href).query).get("url")
        if target:
            return target[0]
    return href


def calculate_confidence(
    title: str,
    authors: List[str],
    journal: Optional[str] = None,
    year: Optional[int] = None,
) -> float:
    confidence = 0.3
    if title and len(title) > 10:
        confidence += 0.2
    if authors:
        confidence += 0.2
    if journal and len(journal) > 3:
        confidence += 0.2
    if year and year > 1900:
        confidence += 0.1
    return min(confidence, 1.0)


def calculate_relevance_score(title: str, abstract: Optional[str] = None) -> float:
    score = 0.5
    if title and len(title) > 20:
        score += 0.1
    if abstract and len(abstract) > 100:
        score += 0.2
    return min(score, 1.0)


class PrimaryResultParser(ResultParser):
    """Structured parser for ``div.gs_r`` result blocks."""

    def parse(self, html: str) -> List[ScholarResult]:
        if not html or not html.strip():
            return []

        soup = BeautifulSoup(html, "html.parser")
        blocks = [
            block for block in soup.select("div.gs_r")
            if block.select_one(".gs_rt") is not None or block.select_one(".gs_a") is not None
        ]

        results: List[ScholarResult] = []
        failures = 0
        for block in blocks:
            try:
                result = self.parse_block(block)
            except Exception as exc:
                failures += 1
                logger.debug("Failed to parse result block: %s", exc)
                continue
            if result is not None:
                results.append(result)

        if blocks:
            logger.debug(
                "Parsed %s/%s result blocks (%s errors)", len(results), len(blocks), failures
            )
        return results

    def parse_block(self, block: Tag) -> Optional[ScholarResult]:
        title_node = block.select_one(".gs_rt")
        if title_node is None:
            return None
        link = title_node.find("a")
        title = clean_text(link.get_text(" ") if link else title_node.get_text(" "))
        title = LEADING_MARKERS_RE.sub("", title).strip()
        if not title:
            return None

        byline_node = block.select_one(".gs_a")
        byline = clean_text(byline_node.get_text(" ")) if byline_node else ""
        authors = parse_authors_from_text(byline)
        if not authors:
            return None

        block_text = clean_text(block.get_text(" "))
        journal = extract_journal_from_author_text(byline)
        year = extract_year(byline) or extract_year(block_text)

        citations = 0
        cited = re.search(r"Cited by (\d+)", block_text, re.IGNORECASE)
        if cited:
            citations = int(cited.group(1))

        url = unwrap_scholar_url(link.get("href")) if link else None

        abstract = None
        abstract_node = block.select_one(".gs_rs")
        if abstract_node is not None:
            candidate = clean_text(abstract_node.get_text(" "))
            if is_valid_abstract(candidate):
                abstract = candidate

        return ScholarResult(
            title=title,
            authors=authors,
            year=year,
            journal=journal,
            doi=extract_doi(str(block)),
            url=url,
            abstract=abstract,
            publication_date=str(year) if year else None,
            confidence=calculate_confidence(title, authors, journal, year),
            relevance_score=calculate_relevance_score(title, abstract),
            citation_count=citations,
        )


class AlternativeLinkParser(ResultParser):
    """Last-resort parser: treat title-like hyperlink texts as low-confidence hits."""

    confidence = 0.2
    relevance_score = 0.3

    def parse(self, html: str) -> List[ScholarResult]:
        if not html or not html.strip():
            return []

        soup = BeautifulSoup(html, "html.parser")
        results: List[ScholarResult] = []
        seen = set()
        for anchor in soup.find_all("a", href=True):
            text = clean_text(anchor.get_text(" "))
            if not looks_like_paper_title(text) or text.lower() in seen:
                continue
            seen.add(text.lower())
            results.append(ScholarResult(
                title=text,
                authors=["Unknown Author"],
                url=unwrap_scholar_url(anchor.get("href")),
                confidence=self.confidence,
                relevance_score=self.relevance_score,
            ))
            if len(results) >= MAX_ALTERNATIVE_RESULTS:
                break

        if results:
            logger.info("Alternative parsing found %s potential results", len(results))
        return results
