"""Idempotent product persistence keyed by external_id."""

import logging
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopcrawl.config import settings
from shopcrawl.db.models import Category, Product, utcnow
from shopcrawl.ingest.product_extractor import ProductData

logger = logging.getLogger(__name__)

# Columns refreshed when a product already exists
UPDATE_COLUMNS = (
    "name",
    "price",
    "currency",
    "brand",
    "image_url",
    "product_url",
    "category_id",
    "updated_at",
)


class PersistenceError(RuntimeError):
    """Raised when products could not be written."""

    def __init__(self, message: str, external_id: Optional[str] = None, name: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id
        self.name = name


def _chunks(rows: Sequence[dict], size: int) -> Iterable[Sequence[dict]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


class IngestStore:
    """The only writer of product rows. Every write is an upsert on external_id."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chunk_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.chunk_size = chunk_size or settings.upsert_chunk_size

    @staticmethod
    def _build_row(item: ProductData, category_id: int, now) -> dict:
        return {
            "external_id": item.external_id,
            "name": item.name,
            "price": item.price,
            "currency": item.currency or settings.default_currency,
            "brand": item.brand,
            "image_url": item.image_url,
            "product_url": item.product_url,
            "category_id": category_id,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _upsert_statement(session: AsyncSession, rows: Sequence[dict]):
        """INSERT ... ON CONFLICT (external_id) DO UPDATE for the bound dialect."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise PersistenceError(f"Upsert is not supported on dialect {dialect!r}")

        stmt = insert(Product).values(list(rows))
        return stmt.on_conflict_do_update(
            index_elements=[Product.external_id],
            set_={column: getattr(stmt.excluded, column) for column in UPDATE_COLUMNS},
        )

    async def upsert_batch(self, items: Sequence[ProductData], category: Category) -> int:
        """
        Insert or update many products in fixed-size chunks.

        Each chunk is its own transaction, so a failing chunk leaves the
        chunks committed before it in place.

        Returns:
            Number of affected rows reported by the database
        """
        if not items:
            return 0

        now = utcnow()
        # Last occurrence wins when a page lists the same product twice
        deduped = {item.external_id: item for item in items}
        rows = [self._build_row(item, category.id, now) for item in deduped.values()]

        total_affected = 0
        for index, chunk in enumerate(_chunks(rows, self.chunk_size)):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        result = await session.execute(self._upsert_statement(session, chunk))
                        affected = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(chunk)
                        total_affected += affected
            except SQLAlchemyError as e:
                first = chunk[0]
                logger.error(
                    f"Product batch upsert failed for chunk {index} "
                    f"({len(chunk)} rows, first external_id={first['external_id']}) "
                    f"in category {category.slug}: {e}"
                )
                raise PersistenceError(
                    f"Failed to upsert product chunk {index} for category {category.slug!r}",
                    external_id=first["external_id"],
                    name=first["name"],
                ) from e

        logger.debug(
            f"Upserted {len(rows)} products into {category.slug} ({total_affected} rows affected)"
        )
        return total_affected

    async def upsert(self, item: ProductData, category: Category) -> Product:
        """
        Insert or update a single product and return the stored row.

        Raises:
            PersistenceError: Wrapping the underlying database error
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = self._build_row(item, category.id, utcnow())
                    await session.execute(self._upsert_statement(session, [row]))
                    result = await session.execute(
                        select(Product).where(Product.external_id == item.external_id)
                    )
                    return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error(
                f"Product upsert failed (external_id={item.external_id}, name={item.name!r}): {e}"
            )
            raise PersistenceError(
                f'Failed to upsert product "{item.name}"',
                external_id=item.external_id,
                name=item.name,
            ) from e
