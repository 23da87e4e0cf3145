"""Category hierarchy maintenance with cycle protection."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shopcrawl.db.models import Category, CategoryCycleError
from shopcrawl.ingest.category_extractor import SubcategoryLink

logger = logging.getLogger(__name__)


class CategoryTree:
    """
    Reads and updates the self-referential category table.

    Traversal is always an explicit breadth-first walk over ids with a
    visited set, so corrupted (cyclic) data cannot cause unbounded work.
    Callers own the session and decide when to commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_slug(self, slug: str) -> Optional[Category]:
        result = await self.db.execute(select(Category).where(Category.slug == slug))
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        slug: str,
        name: str,
        parent_id: Optional[int] = None,
    ) -> Category:
        """Return the category for a slug, creating it when missing."""
        category = await self.get_by_slug(slug)
        if category is not None:
            return category

        category = Category(slug=slug, name=name, parent_id=parent_id)
        self.db.add(category)
        await self.db.flush()
        logger.info(f"Created category {slug!r} (id={category.id}, parent_id={parent_id})")
        return category

    async def children_ids(self, parent_ids: set[int]) -> set[int]:
        if not parent_ids:
            return set()
        result = await self.db.execute(
            select(Category.id).where(Category.parent_id.in_(parent_ids))
        )
        return set(result.scalars().all())

    async def descendant_ids(self, category_id: int) -> set[int]:
        """
        All ids reachable from a category through child links.

        The starting id is never part of the result, even when the stored
        data loops back to it.
        """
        visited = {category_id}
        frontier = {category_id}

        while frontier:
            children = await self.children_ids(frontier)
            frontier = children - visited
            visited |= frontier

        visited.discard(category_id)
        return visited

    async def resolve_parent_on_discovery(
        self,
        existing: Category,
        crawling: Category,
    ) -> Optional[int]:
        """
        Decide the parent of a category rediscovered while crawling another.

        1. A child that already has a parent keeps it (first writer wins).
        2. A root crawling category claims a parentless child.
        3. Otherwise the crawling category becomes the parent unless it is
           already a descendant of the child, in which case the child keeps
           its current parent and a warning is logged.
        """
        if existing.parent_id is not None:
            if existing.parent_id != crawling.id:
                logger.debug(
                    f"Category {existing.slug!r} keeps parent {existing.parent_id}; "
                    f"not reparenting under {crawling.slug!r}"
                )
            return existing.parent_id

        if crawling.is_root:
            return crawling.id

        descendants = await self.descendant_ids(existing.id)
        if crawling.id in descendants:
            logger.warning(
                f"Not attaching {existing.slug!r} under {crawling.slug!r}: "
                f"{crawling.slug!r} is already a descendant of it (cycle)"
            )
            return existing.parent_id

        return crawling.id

    def assign_parent(self, category: Category, parent_id: Optional[int]) -> None:
        """
        Set a category's parent.

        Raises:
            CategoryCycleError: If the category would be its own parent
        """
        if parent_id is not None and parent_id == category.id:
            raise CategoryCycleError(category.id, parent_id)
        if category.parent_id != parent_id:
            category.parent_id = parent_id

    async def register_discovered(self, link: SubcategoryLink, crawling: Category) -> Category:
        """Get or create a discovered subcategory and settle its parent."""
        child = await self.get_or_create(link.slug, link.name)
        parent_id = await self.resolve_parent_on_discovery(child, crawling)
        self.assign_parent(child, parent_id)
        await self.db.flush()
        return child
