"""refscout: resilient scholarly search and citation metadata retrieval."""

from refscout.core.config import configure_logging

__version__ = "0.1.0"

__all__ = ["configure_logging"]
