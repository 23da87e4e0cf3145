"""Tests for the recursive category crawl."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from fakes import SITE, ScriptedFetcher, page, product_cards
from shopcrawl.db.models import Category, Product
from shopcrawl.ingest.base import FetchResult
from shopcrawl.ingest.category_extractor import CategoryExtractor
from shopcrawl.ingest.category_tree import CategoryTree
from shopcrawl.ingest.crawl_engine import CrawlEngine, CrawlSession, build_page_url
from shopcrawl.ingest.http_client import ConnectionFailedError
from shopcrawl.ingest.ingest_store import IngestStore, PersistenceError
from shopcrawl.ingest.rate_limiter import PoliteDelay

ROOT_URL = f"{SITE}/tv-sprejemniki/cene/56"


async def create_root(session_factory, slug: str = "tv-sprejemniki") -> Category:
    async with session_factory() as db:
        category = await CategoryTree(db).get_or_create(slug, slug.title())
        await db.commit()
        return category


async def count_products(session_factory) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(Product))


def no_throttle() -> PoliteDelay:
    return PoliteDelay(enabled=False)


def test_build_page_url():
    assert build_page_url(ROOT_URL, 1) == ROOT_URL
    assert build_page_url(ROOT_URL, 2) == f"{ROOT_URL}?page=2"
    assert build_page_url(f"{ROOT_URL}?sort=price", 3) == f"{ROOT_URL}?sort=price&page=3"


@pytest.mark.asyncio
async def test_pagination_stops_after_empty_streak(session_factory):
    root = await create_root(session_factory)
    fetcher = ScriptedFetcher(
        {
            ROOT_URL: page(product_cards("p1", 3)),
            build_page_url(ROOT_URL, 5): page(product_cards("p5", 3)),
        }
    )
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    engine = CrawlEngine(
        fetcher,
        session_factory,
        throttle=PoliteDelay(enabled=True, delay=1.5, jitter=0, sleep=fake_sleep),
        max_pages=25,
    )
    imported = await engine.handle(root, ROOT_URL)

    assert fetcher.requested == [build_page_url(ROOT_URL, n) for n in range(1, 5)]
    assert imported == 3
    assert await count_products(session_factory) == 3
    # No delay before the first page
    assert sleeps == [1.5, 1.5, 1.5]


@pytest.mark.asyncio
async def test_products_found_reset_the_streak(session_factory):
    root = await create_root(session_factory)
    fetcher = ScriptedFetcher(
        {
            ROOT_URL: page(product_cards("p1", 2)),
            build_page_url(ROOT_URL, 3): page(product_cards("p3", 2)),
            build_page_url(ROOT_URL, 4): page(product_cards("p4", 2)),
        }
    )

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle(), max_pages=6)
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 6
    assert len(fetcher.requested) == 6


@pytest.mark.asyncio
async def test_max_pages_bounds_the_loop(session_factory):
    root = await create_root(session_factory)
    fetcher = ScriptedFetcher({}, default=lambda url: page(product_cards(f"p{url.split('page=')[-1][-2:]}", 1)))

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle(), max_pages=25)
    imported = await engine.handle(root, ROOT_URL, max_pages=4)

    assert len(fetcher.requested) == 4
    assert imported == 4


@pytest.mark.asyncio
async def test_blocked_pages_count_toward_streak(session_factory):
    root = await create_root(session_factory)
    blocked = {
        build_page_url(ROOT_URL, n): FetchResult.blocked_result(build_page_url(ROOT_URL, n), 0.1, 403)
        for n in range(2, 5)
    }
    fetcher = ScriptedFetcher({ROOT_URL: page(product_cards("p1", 2)), **blocked})

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle())
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 2
    assert len(fetcher.requested) == 4


@pytest.mark.asyncio
async def test_fetch_error_stops_category(session_factory):
    root = await create_root(session_factory)
    page_two = build_page_url(ROOT_URL, 2)
    fetcher = ScriptedFetcher(
        {
            ROOT_URL: page(product_cards("p1", 2)),
            page_two: ConnectionFailedError(page_two, "connection reset"),
            build_page_url(ROOT_URL, 3): page(product_cards("p3", 2)),
        }
    )

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle())
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 2
    assert fetcher.requested == [ROOT_URL, page_two]


@pytest.mark.asyncio
async def test_depth_bound(session_factory):
    def level_url(n: int) -> str:
        return f"{SITE}/level-{n}/cene"

    pages = {
        level_url(n): page(
            f'<a href="/level-{n + 1}/cene">Level {n + 1}</a>' + product_cards(f"level{n}", 1)
        )
        for n in range(10)
    }
    fetcher = ScriptedFetcher(pages)
    root = await create_root(session_factory, "level-0")

    engine = CrawlEngine(
        fetcher,
        session_factory,
        category_extractor=CategoryExtractor(path_fragments=["/level-"], names=[]),
        throttle=no_throttle(),
        max_pages=1,
    )
    session = CrawlSession()
    imported = await engine.handle(root, level_url(0), session=session)

    assert fetcher.requested == [level_url(n) for n in range(6)]
    assert imported == 6
    assert session.total_imported == 6
    assert session.depth == 0

    async with session_factory() as db:
        tree = CategoryTree(db)
        level_1 = await tree.get_by_slug("level-1")
        level_2 = await tree.get_by_slug("level-2")
        level_6 = await tree.get_by_slug("level-6")
    assert level_1.parent_id == root.id
    assert level_2.parent_id == level_1.id
    # Categories past the depth ceiling are never registered
    assert level_6 is None


@pytest.mark.asyncio
async def test_visited_urls_are_not_refetched(session_factory):
    a_url = f"{SITE}/sub/a"
    b_url = f"{SITE}/sub/b"
    fetcher = ScriptedFetcher(
        {
            ROOT_URL: page('<a href="/sub/a">A</a><a href="/sub/b">B</a>' + product_cards("root", 1)),
            a_url: page('<a href="/sub/b">B</a>' + product_cards("a", 1)),
            b_url: page('<a href="/sub/a#top">A</a>' + product_cards("b", 1)),
        }
    )
    root = await create_root(session_factory)

    engine = CrawlEngine(
        fetcher,
        session_factory,
        category_extractor=CategoryExtractor(path_fragments=["/sub/"], names=[]),
        throttle=no_throttle(),
        max_pages=1,
    )
    session = CrawlSession()
    imported = await engine.handle(root, ROOT_URL, session=session)

    assert fetcher.requested == [ROOT_URL, a_url, b_url]
    assert imported == 3
    assert session.subcategories_discovered == 4
    assert session.pages_fetched == 3


@pytest.mark.asyncio
async def test_subcategory_with_own_slug_is_skipped(session_factory):
    fetcher = ScriptedFetcher(
        {
            ROOT_URL: page('<a href="/televizorji/cene/206">Televizorji</a>' + product_cards("p1", 1)),
        }
    )
    root = await create_root(session_factory, "televizorji")

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle(), max_pages=1)
    await engine.handle(root, ROOT_URL)

    assert fetcher.requested == [ROOT_URL]


@pytest.mark.asyncio
async def test_subcategory_counts_accumulate(session_factory):
    child_url = f"{SITE}/televizorji/cene/206"
    fetcher = ScriptedFetcher(
        {
            ROOT_URL: page('<a href="/televizorji/cene/206">Televizorji</a>' + product_cards("root", 2)),
            child_url: page(product_cards("child", 3)),
        }
    )
    root = await create_root(session_factory)
    progress = []

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle(), max_pages=1)
    engine.register_progress_callback(progress.append)
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 5
    assert await count_products(session_factory) == 5
    assert [(p.category_slug, p.depth, p.items) for p in progress] == [
        ("televizorji", 1, 3),
        ("tv-sprejemniki", 0, 2),
    ]


@pytest.mark.asyncio
async def test_cache_invalidated_after_crawl(session_factory):
    root = await create_root(session_factory)
    cache = AsyncMock()
    fetcher = ScriptedFetcher({ROOT_URL: page(product_cards("p1", 1))})

    engine = CrawlEngine(fetcher, session_factory, cache=cache, throttle=no_throttle(), max_pages=1)
    await engine.handle(root, ROOT_URL)

    cache.invalidate_tags.assert_awaited_once_with(["products", "categories"])


@pytest.mark.asyncio
async def test_cache_failure_is_not_fatal(session_factory):
    root = await create_root(session_factory)
    cache = AsyncMock()
    cache.invalidate_tags.side_effect = RuntimeError("redis down")
    fetcher = ScriptedFetcher({ROOT_URL: page(product_cards("p1", 2))})

    engine = CrawlEngine(fetcher, session_factory, cache=cache, throttle=no_throttle(), max_pages=1)
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 2
    cache.invalidate_tags.assert_awaited_once()


@pytest.mark.asyncio
async def test_pages_without_parseable_items_count_toward_streak(session_factory):
    root = await create_root(session_factory)
    decorative = page('<div class="product"><span>Oglas</span><img src="/banner.png"></div>' * 2)
    fetcher = ScriptedFetcher({ROOT_URL: page(product_cards("p1", 2))}, default=lambda url: decorative)

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle())
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 2
    assert len(fetcher.requested) == 4


@pytest.mark.asyncio
async def test_blank_html_counts_toward_streak(session_factory):
    root = await create_root(session_factory)
    fetcher = ScriptedFetcher({ROOT_URL: page(product_cards("p1", 2))}, default=lambda url: "   ")
    progress = []

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle())
    engine.register_progress_callback(progress.append)
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 2
    assert len(fetcher.requested) == 4
    assert [p.status for p in progress] == ["ok", "empty", "empty", "empty"]


class FailingIngestStore(IngestStore):
    """Fails the n-th batch write."""

    def __init__(self, session_factory, fail_on_call: int):
        super().__init__(session_factory)
        self.fail_on_call = fail_on_call
        self.calls = 0

    async def upsert_batch(self, items, category):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise PersistenceError("database unavailable", external_id=items[0].external_id)
        return await super().upsert_batch(items, category)


@pytest.mark.asyncio
async def test_persistence_error_stops_category_with_partial_count(session_factory):
    root = await create_root(session_factory)
    fetcher = ScriptedFetcher(
        {},
        default=lambda url: page(product_cards(f"p{url.split('page=')[-1][-2:]}", 2)),
    )

    engine = CrawlEngine(
        fetcher,
        session_factory,
        ingest_store=FailingIngestStore(session_factory, fail_on_call=2),
        throttle=no_throttle(),
    )
    imported = await engine.handle(root, ROOT_URL)

    assert imported == 2
    assert len(fetcher.requested) == 2
    assert await count_products(session_factory) == 2


@pytest.mark.asyncio
async def test_zero_max_pages_fetches_nothing(session_factory):
    root = await create_root(session_factory)
    fetcher = ScriptedFetcher({ROOT_URL: page(product_cards("p1", 2))})

    engine = CrawlEngine(fetcher, session_factory, throttle=no_throttle(), max_pages=0)

    assert engine.max_pages == 0
    assert await engine.handle(root, ROOT_URL) == 0
    assert await engine.handle(root, f"{ROOT_URL}?sort=price", max_pages=0) == 0
    assert fetcher.requested == []


def test_explicit_zero_settings_are_kept():
    engine = CrawlEngine(ScriptedFetcher({}), session_factory=None, max_depth=0, empty_streak_limit=0)

    assert engine.max_depth == 0
    assert engine.empty_streak_limit == 0
