#!/usr/bin/env python3
"""
Command line entry point.

    shopcrawl init-db
    shopcrawl seed
    shopcrawl crawl tv-sprejemniki
    shopcrawl crawl --slug monitorji --name Monitorji --url https://www.shoptok.si/monitorji/cene/60
"""

import argparse
import asyncio
import logging
import sys
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopcrawl.cache import CacheInvalidator, build_cache
from shopcrawl.config import settings
from shopcrawl.db.models import Category
from shopcrawl.ingest.base import BaseFetcher
from shopcrawl.ingest.category_tree import CategoryTree
from shopcrawl.ingest.crawl_engine import CrawlEngine, CrawlSession, PageProgress
from shopcrawl.ingest.rate_limiter import PoliteDelay
from shopcrawl.ingest.registry import FetcherRegistry, build_fetcher
from shopcrawl.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NO_SUBCATEGORIES = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shopcrawl", description="Shop catalog crawler")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("seed", help="Create root categories for every configured preset")

    crawl = subparsers.add_parser("crawl", help="Crawl a category and its subcategories")
    crawl.add_argument("preset", nargs="?", help=f"Preset slug ({', '.join(settings.categories)})")
    crawl.add_argument("--slug", help="Category slug (custom crawl)")
    crawl.add_argument("--name", help="Category display name (custom crawl)")
    crawl.add_argument("--url", help="Category first-page URL (custom crawl)")
    crawl.add_argument("--max-pages", type=int, default=None, help="Page limit per category")
    crawl.add_argument(
        "--backend",
        choices=FetcherRegistry.list_backends(),
        default=None,
        help="Page fetcher backend",
    )
    crawl.add_argument("--no-throttle", action="store_true", help="Disable the delay between pages")
    crawl.add_argument(
        "--require-subcategories",
        action="store_true",
        default=None,
        help="Exit with status 1 if no subcategories are discovered",
    )
    return parser


def resolve_target(args: argparse.Namespace) -> tuple[str, str, str, bool]:
    """
    Work out (slug, name, url, require_subcategories) for a crawl command.

    Raises:
        ValueError: If the preset is unknown or a custom crawl lacks --url
    """
    if args.preset:
        preset = settings.categories.get(args.preset)
        if preset is None:
            raise ValueError(
                f"Unknown preset {args.preset!r}. Available: {', '.join(settings.categories)}"
            )
        slug = args.slug or args.preset
        name = args.name or preset["name"]
        url = args.url or preset["url"]
        required = bool(preset.get("require_subcategories", False))
    else:
        if not args.slug or not args.url:
            raise ValueError("Either a preset or both --slug and --url are required")
        slug = args.slug
        name = args.name or args.slug
        url = args.url
        required = False

    if args.require_subcategories is not None:
        required = args.require_subcategories
    return slug, name, url, required


async def seed_presets(session_factory: async_sessionmaker[AsyncSession]) -> list[Category]:
    """Create (or fetch) a root category for every configured preset."""
    seeded = []
    async with session_factory() as db:
        tree = CategoryTree(db)
        for slug, preset in settings.categories.items():
            seeded.append(await tree.get_or_create(slug, preset["name"]))
        await db.commit()
    return seeded


def print_progress(progress: PageProgress) -> None:
    indent = "  " * progress.depth
    print(
        f"{indent}[{progress.category_slug}] page {progress.page} {progress.status}: "
        f"{progress.items} items (category {progress.category_total}, total {progress.session_total})",
        flush=True,
    )


async def run_crawl(
    slug: str,
    name: str,
    url: str,
    session_factory: async_sessionmaker[AsyncSession],
    fetcher: BaseFetcher,
    max_pages: Optional[int] = None,
    throttle: bool = True,
    require_subcategories: bool = False,
    cache: Optional[CacheInvalidator] = None,
    on_progress: Optional[Callable[[PageProgress], None]] = print_progress,
) -> int:
    """
    Crawl one root category and report the outcome.

    Returns:
        Process exit code
    """
    async with session_factory() as db:
        root = await CategoryTree(db).get_or_create(slug, name)
        await db.commit()

    engine = CrawlEngine(
        fetcher=fetcher,
        session_factory=session_factory,
        cache=cache,
        throttle=PoliteDelay(enabled=throttle and settings.throttle_enabled),
        max_pages=max_pages,
    )
    if on_progress is not None:
        engine.register_progress_callback(on_progress)

    session = CrawlSession()
    imported = await engine.handle(root, url, max_pages=max_pages, session=session)

    print(
        f"Imported {imported} products into {slug} "
        f"({session.pages_fetched} pages, {session.subcategories_discovered} subcategories discovered)",
        flush=True,
    )

    if require_subcategories and session.subcategories_discovered == 0:
        print(f"No subcategories found under {url}", file=sys.stderr, flush=True)
        return EXIT_NO_SUBCATEGORIES
    return EXIT_OK


async def _dispatch(args: argparse.Namespace) -> int:
    from shopcrawl.db.session import AsyncSessionLocal, engine, init_db

    try:
        if args.command == "init-db":
            await init_db()
            print("Database tables created")
            return EXIT_OK

        if args.command == "seed":
            await init_db()
            seeded = await seed_presets(AsyncSessionLocal)
            for category in seeded:
                print(f"  {category.slug} (id={category.id})")
            print(f"Seeded {len(seeded)} categories")
            return EXIT_OK

        try:
            slug, name, url, required = resolve_target(args)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_USAGE

        cache = build_cache()
        try:
            async with build_fetcher(args.backend) as fetcher:
                return await run_crawl(
                    slug,
                    name,
                    url,
                    AsyncSessionLocal,
                    fetcher,
                    max_pages=args.max_pages,
                    throttle=not args.no_throttle,
                    require_subcategories=required,
                    cache=cache,
                )
        finally:
            await cache.close()
    finally:
        await engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level)

    try:
        return asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
