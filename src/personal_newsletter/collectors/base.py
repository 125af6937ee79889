from abc import ABC, abstractmethod

from ..models import Article


class BaseCollector(ABC):
    """Base interface for article sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        ...

    @abstractmethod
    def fetch(self, categories: list[str]) -> list[Article]:
        """Fetch articles for the given categories. May return an empty list."""
        ...


class ArticleSourceError(RuntimeError):
    """Raised when a source cannot be read at all."""
