"""Base fetcher interface for category pages."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class FetchResult:
    """Rendered HTML of one page plus timing metadata.

    A blocked (anti-bot) response is returned as ``blocked=True`` with
    empty HTML rather than raised, so callers can treat it as an empty page.
    """

    html: str
    url: str
    elapsed: float
    status_code: Optional[int] = None
    blocked: bool = False

    @property
    def is_empty(self) -> bool:
        return self.blocked or not self.html.strip()

    @classmethod
    def blocked_result(cls, url: str, elapsed: float, status_code: Optional[int] = None) -> "FetchResult":
        return cls(html="", url=url, elapsed=elapsed, status_code=status_code, blocked=True)


class BaseFetcher(ABC):
    """Abstract base class for page fetchers."""

    backend_name: str = ""

    @abstractmethod
    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch the rendered HTML of a page.

        Args:
            url: Absolute page URL

        Returns:
            FetchResult (blocked responses come back with blocked=True)

        Raises:
            FetchError: If the page could not be fetched after retries
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
