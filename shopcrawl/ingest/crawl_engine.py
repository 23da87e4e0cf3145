"""Recursive category crawl: pagination, subcategory discovery and ingest."""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from urllib.parse import urldefrag

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopcrawl.cache import CacheInvalidator, invalidate_quietly
from shopcrawl.config import settings
from shopcrawl.db.models import Category, CategoryCycleError
from shopcrawl.ingest.base import BaseFetcher, FetchResult
from shopcrawl.ingest.category_extractor import CategoryExtractor, SubcategoryLink
from shopcrawl.ingest.category_tree import CategoryTree
from shopcrawl.ingest.http_client import FetchError
from shopcrawl.ingest.ingest_store import IngestStore, PersistenceError
from shopcrawl.ingest.product_extractor import ProductExtractor
from shopcrawl.ingest.rate_limiter import PoliteDelay
from shopcrawl.logging_config import get_logger
from shopcrawl import metrics

logger = logging.getLogger(__name__)


def build_page_url(base_url: str, page: int) -> str:
    """Page 1 is the base URL; later pages append page=N to the query."""
    if page <= 1:
        return base_url
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}page={page}"


def visit_key(url: str) -> str:
    return urldefrag(url.strip()).url


@dataclass
class CrawlSession:
    """State shared by one top-level crawl and all of its recursive sub-crawls."""

    visited_urls: set[str] = field(default_factory=set)
    depth: int = 0
    total_imported: int = 0
    pages_fetched: int = 0
    subcategories_discovered: int = 0


@dataclass
class PageProgress:
    """Progress of a single processed page."""

    category_slug: str
    url: str
    page: int
    depth: int
    status: str  # ok, empty, blocked, error
    items: int = 0
    category_total: int = 0
    session_total: int = 0
    elapsed: float = 0.0


class CrawlEngine:
    """
    Crawls one category (and, from its first page, its subcategories).

    Per category the loop is: fetch page, discover subcategories (page 1
    only), extract products, persist, then either continue to the next
    page or stop. Stopping happens when max pages is reached, after
    ``empty_streak_limit`` consecutive pages without usable products, or
    on the first fatal fetch/persistence error. ``handle`` always returns
    the number of products imported, including those of sub-crawls.
    """

    def __init__(
        self,
        fetcher: BaseFetcher,
        session_factory: async_sessionmaker[AsyncSession],
        category_extractor: Optional[CategoryExtractor] = None,
        product_extractor: Optional[ProductExtractor] = None,
        ingest_store: Optional[IngestStore] = None,
        cache: Optional[CacheInvalidator] = None,
        throttle: Optional[PoliteDelay] = None,
        max_pages: Optional[int] = None,
        max_depth: Optional[int] = None,
        empty_streak_limit: Optional[int] = None,
        cache_tags: Optional[List[str]] = None,
    ):
        self.fetcher = fetcher
        self.session_factory = session_factory
        self.category_extractor = category_extractor or CategoryExtractor()
        self.product_extractor = product_extractor or ProductExtractor()
        self.ingest_store = ingest_store or IngestStore(session_factory)
        self.cache = cache
        self.throttle = throttle or PoliteDelay()
        self.max_pages = settings.crawl_max_pages if max_pages is None else max_pages
        self.max_depth = settings.crawl_max_depth if max_depth is None else max_depth
        self.empty_streak_limit = (
            settings.crawl_empty_streak_limit if empty_streak_limit is None else empty_streak_limit
        )
        self.cache_tags = list(cache_tags or settings.cache_invalidation_tags)

        self._progress_callbacks: List[Callable[[PageProgress], None]] = []

    def register_progress_callback(self, callback: Callable[[PageProgress], None]):
        """Register a callback to be called after every processed page."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self, progress: PageProgress):
        metrics.record_page(progress.status)
        for callback in self._progress_callbacks:
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback error: {e}")

    async def handle(
        self,
        category: Category,
        base_url: str,
        max_pages: Optional[int] = None,
        session: Optional[CrawlSession] = None,
    ) -> int:
        """
        Crawl a category and its subcategories.

        Args:
            category: Category the products on these pages belong to
            base_url: URL of the category's first page
            max_pages: Page limit per category (defaults to the engine's)
            session: Shared state of the running crawl; a new one starts a new crawl

        Returns:
            Products imported for this category including its descendants
        """
        session = session if session is not None else CrawlSession()
        max_pages = self.max_pages if max_pages is None else max_pages
        log = get_logger(__name__, category=category.slug, depth=session.depth)

        if session.depth > self.max_depth:
            log.warning(
                f"Max depth {self.max_depth} exceeded at {base_url} "
                f"(depth {session.depth}); skipping branch"
            )
            return 0

        key = visit_key(base_url)
        if key in session.visited_urls:
            log.info(f"Already visited {base_url}; skipping")
            return 0
        session.visited_urls.add(key)

        try:
            return await self._crawl_pages(category, base_url, max_pages, session, log)
        finally:
            await invalidate_quietly(self.cache, self.cache_tags)

    async def _crawl_pages(
        self,
        category: Category,
        base_url: str,
        max_pages: int,
        session: CrawlSession,
        log,
    ) -> int:
        total_imported = 0
        empty_streak = 0

        for page in range(1, max_pages + 1):
            if page > 1:
                await self.throttle.wait()

            url = build_page_url(base_url, page)
            progress = PageProgress(
                category_slug=category.slug, url=url, page=page, depth=session.depth, status="ok"
            )

            try:
                result = await self.fetcher.fetch(url)
            except FetchError as e:
                log.error(f"Failed to crawl page {page} ({url}): {type(e).__name__}: {e}")
                metrics.record_fetch_error(type(e).__name__)
                progress.status = "error"
                self._notify_progress(progress)
                break

            session.pages_fetched += 1
            progress.elapsed = result.elapsed

            if page == 1 and not result.is_empty:
                total_imported += await self._crawl_subcategories(
                    category, result, max_pages, session
                )

            items = self._extract_items(result)
            if not items:
                empty_streak += 1
                progress.status = "blocked" if result.blocked else "empty"
                progress.category_total = total_imported
                progress.session_total = session.total_imported
                self._notify_progress(progress)
                if empty_streak >= self.empty_streak_limit:
                    log.info(
                        f"{empty_streak} consecutive pages without products at page {page}; "
                        f"end of catalog for {category.slug}"
                    )
                    break
                continue

            try:
                await self.ingest_store.upsert_batch(items, category)
            except PersistenceError as e:
                log.error(f"Failed to store page {page} of {category.slug} ({url}): {e}")
                progress.status = "error"
                self._notify_progress(progress)
                break

            empty_streak = 0
            total_imported += len(items)
            session.total_imported += len(items)
            metrics.record_upserted(len(items))

            progress.items = len(items)
            progress.category_total = total_imported
            progress.session_total = session.total_imported
            self._notify_progress(progress)
            log.info(
                f"Crawled page {page} of {category.slug}: {len(items)} items "
                f"({total_imported} total, {result.elapsed:.2f}s)"
            )

        return total_imported

    def _extract_items(self, result: FetchResult):
        if result.is_empty:
            return []
        nodes = self.product_extractor.find_product_nodes(result.html)
        if not nodes:
            return []
        return self.product_extractor.parse_items(nodes)

    async def _crawl_subcategories(
        self,
        category: Category,
        result: FetchResult,
        max_pages: int,
        session: CrawlSession,
    ) -> int:
        links = self.category_extractor.extract_subcategories(result.html)
        if not links:
            return 0

        session.subcategories_discovered += len(links)
        metrics.record_subcategories(len(links))
        logger.info(f"Discovered {len(links)} subcategories under {category.slug}")

        imported = 0
        for link in links:
            if not self._should_follow(link, category, session):
                continue
            if session.depth + 1 > self.max_depth:
                logger.warning(
                    f"Max depth {self.max_depth} reached under {category.slug}; "
                    f"not following {link.url}"
                )
                continue

            try:
                child = await self._register_subcategory(link, category)
            except (CategoryCycleError, SQLAlchemyError) as e:
                logger.error(f"Could not register subcategory {link.slug!r} under {category.slug!r}: {e}")
                continue

            session.depth += 1
            try:
                imported += await self.handle(child, link.url, max_pages, session)
            finally:
                session.depth -= 1

        return imported

    @staticmethod
    def _should_follow(link: SubcategoryLink, category: Category, session: CrawlSession) -> bool:
        if link.slug == category.slug:
            return False
        if not link.url or link.url.startswith("#"):
            return False
        return visit_key(link.url) not in session.visited_urls

    async def _register_subcategory(self, link: SubcategoryLink, crawling: Category) -> Category:
        async with self.session_factory() as db:
            tree = CategoryTree(db)
            child = await tree.register_discovered(link, crawling)
            await db.commit()
            return child
