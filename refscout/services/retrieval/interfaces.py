"""Abstract base classes defining the retrieval contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from .models import ScholarResult, SearchOptions


class ResultParser(ABC):
    """A strategy that turns a search results page into results."""

    @abstractmethod
    def parse(self, html: str) -> List[ScholarResult]:  # pragma: no cover - interface only
        """Return the results found in ``html`` (possibly empty)."""


class FallbackSource(ABC):
    """Interface implemented by alternate search providers."""

    @abstractmethod
    def get_source_name(self) -> str:  # pragma: no cover - interface only
        """Return the identifier used in ``FallbackConfig.fallback_sources``."""

    @abstractmethod
    async def search(self, query: str, options: SearchOptions) -> List[ScholarResult]:
        """Execute the search; raise on transport failure."""
