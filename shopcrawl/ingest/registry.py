"""Fetcher registry for the available page-fetch backends."""

import logging
from typing import Optional, Type

from shopcrawl.config import settings
from shopcrawl.ingest.base import BaseFetcher

logger = logging.getLogger(__name__)


def _http_fetcher() -> Type[BaseFetcher]:
    from shopcrawl.ingest.fetchers.static import HttpPageFetcher

    return HttpPageFetcher


def _browser_fetcher() -> Type[BaseFetcher]:
    # Imported lazily so plain HTTP crawls never load playwright
    from shopcrawl.ingest.fetchers.headless import BrowserPageFetcher

    return BrowserPageFetcher


class FetcherRegistry:
    """Registry for page fetcher backends."""

    _fetchers = {
        "http": _http_fetcher,
        "browser": _browser_fetcher,
    }

    @classmethod
    def get_fetcher_class(cls, backend: str) -> Type[BaseFetcher]:
        """
        Resolve a backend name to its fetcher class.

        Raises:
            ValueError: If backend is not registered
        """
        if backend not in cls._fetchers:
            raise ValueError(
                f"Unknown fetcher backend: {backend}. Available: {list(cls._fetchers.keys())}"
            )
        return cls._fetchers[backend]()

    @classmethod
    def list_backends(cls) -> list[str]:
        """List all registered backend names."""
        return list(cls._fetchers.keys())


def build_fetcher(backend: Optional[str] = None, **kwargs) -> BaseFetcher:
    """Create a fetcher for the given (or configured) backend."""
    backend = backend or settings.fetcher_backend
    fetcher_class = FetcherRegistry.get_fetcher_class(backend)
    logger.info(f"Using {backend} page fetcher")
    return fetcher_class(**kwargs)
