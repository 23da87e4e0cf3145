"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CategoryCycleError(ValueError):
    """Raised when a category would become its own parent."""

    def __init__(self, category_id: Optional[int], parent_id: Optional[int]):
        self.category_id = category_id
        self.parent_id = parent_id
        super().__init__(
            f"Category {category_id} cannot be its own parent (parent_id={parent_id})"
        )


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Category(Base):
    """Category node in the crawled category tree."""

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    products: Mapped[list["Product"]] = relationship("Product", back_populates="category")

    __table_args__ = (
        CheckConstraint(
            "parent_id IS NULL OR parent_id <> id", name="ck_category_not_own_parent"
        ),
    )

    @validates("parent_id")
    def _validate_parent_id(self, key, value):
        if value is not None and self.id is not None and value == self.id:
            raise CategoryCycleError(self.id, value)
        return value

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def __repr__(self) -> str:
        return f"<Category id={self.id} slug={self.slug!r} parent_id={self.parent_id}>"


class Product(Base):
    """Product listing discovered on a category page."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_url: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("categories.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    category: Mapped["Category"] = relationship("Category", back_populates="products")

    def __repr__(self) -> str:
        return f"<Product external_id={self.external_id[:12]} name={self.name!r}>"
