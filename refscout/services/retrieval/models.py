"""Domain models used by metadata retrieval."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


def _clamp_score(value: float, default: float = 0.5) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(value, 0.0), 1.0)


class ReferenceType(str, Enum):
    """Canonical kinds of citable works."""

    JOURNAL_ARTICLE = "journal_article"
    BOOK = "book"
    BOOK_CHAPTER = "book_chapter"
    CONFERENCE_PAPER = "conference_paper"
    THESIS = "thesis"
    REPORT = "report"
    PATENT = "patent"
    WEBSITE = "website"
    OTHER = "other"


class SourceType(str, Enum):
    URL = "url"
    DOI = "doi"


@dataclass
class ScholarResult:
    """A single search hit from the scraped source or a fallback provider."""

    title: str
    authors: List[str]
    year: Optional[int] = None
    journal: Optional[str] = None
    doi: Optional[str] = None
    url: Optional[str] = None
    abstract: Optional[str] = None
    publication_date: Optional[str] = None
    confidence: float = 0.5
    relevance_score: float = 0.5
    citation_count: int = 0
    keywords: List[str] = field(default_factory=list)
    publisher: Optional[str] = None
    source: str = "google_scholar"

    def __post_init__(self) -> None:
        self.confidence = _clamp_score(self.confidence)
        self.relevance_score = _clamp_score(self.relevance_score)
        try:
            self.citation_count = max(0, int(self.citation_count or 0))
        except (TypeError, ValueError):
            self.citation_count = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Author:
    first_name: str = ""
    last_name: str = ""
    middle_name: Optional[str] = None
    suffix: Optional[str] = None

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name, self.suffix]
        return " ".join(p for p in parts if p)


@dataclass
class ReferenceMetadata:
    """Bibliographic record produced by the DOI and URL extractors.

    ``confidence`` grows with the number of populated fields and is always
    kept within [0, 1].
    """

    title: Optional[str] = None
    authors: List[Author] = field(default_factory=list)
    publication_date: Optional[date] = None
    journal: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None
    pages: Optional[str] = None
    publisher: Optional[str] = None
    isbn: Optional[str] = None
    doi: Optional[str] = None
    url: Optional[str] = None
    abstract: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    type: ReferenceType = ReferenceType.OTHER
    confidence: float = 0.0

    def __post_init__(self) -> None:
        self.confidence = _clamp_score(self.confidence, default=0.0)

    def has_meaningful_content(self) -> bool:
        return bool(self.title) or bool(self.authors)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["publication_date"] = (
            self.publication_date.isoformat() if self.publication_date else None
        )
        return data


@dataclass
class SearchOptions:
    max_results: Optional[int] = None
    year_start: Optional[int] = None
    year_end: Optional[int] = None
    sort_by: str = "relevance"
    include_patents: bool = False
    include_citations: bool = True
    language: str = "en"

    def to_params(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchOutcome:
    """Detailed result of a search, including how it was produced."""

    results: List[ScholarResult]
    source: str
    success: bool
    error: Optional[str] = None
    fallback_used: bool = False
    degraded_mode: bool = False
    processing_time: int = 0
    retry_count: int = 0


@dataclass
class MetadataExtractionRequest:
    source: str
    type: Optional[SourceType] = None
    conversation_id: str = "default"

    def __post_init__(self) -> None:
        if self.type is not None and not isinstance(self.type, SourceType):
            self.type = SourceType(self.type)


@dataclass
class MetadataExtractionResponse:
    success: bool
    source: str
    extraction_time: int
    metadata: Optional[ReferenceMetadata] = None
    error: Optional[str] = None
    method: Optional[SourceType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "error": self.error,
            "extraction_time": self.extraction_time,
            "source": self.source,
            "method": self.method.value if self.method else None,
        }


@dataclass
class SourceValidation:
    is_valid: bool
    detected_type: Optional[SourceType] = None
    error: Optional[str] = None


@dataclass
class ConnectionTestResult:
    success: bool
    response_time: int
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DoiBatchResult:
    doi: str
    metadata: Optional[ReferenceMetadata] = None
    error: Optional[str] = None


@dataclass
class DoiAccessibility:
    accessible: bool
    error: Optional[str] = None
