from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edify.models import Base, User
from app.edify.utils import iso, money_str, utcnow

BOOK_STATUSES = ("draft", "pending_review", "approved", "published", "rejected", "archived")
CATEGORY_KINDS = ("book", "blog")


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="book")  # book | blog
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "kind": self.kind,
            "is_active": self.is_active,
        }


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        Index("idx_books_status", "status"),
        Index("idx_books_category_id", "category_id"),
        Index("idx_books_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    author: Mapped[str] = mapped_column(String(255), nullable=False)
    # Set when the author has an account; drives AuthorRevenue rows.
    author_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    cover_image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    stock: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = digital / unlimited
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    book_file_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    isbn: Mapped[str | None] = mapped_column(String(32), nullable=True)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    language: Mapped[str] = mapped_column(String(32), nullable=False, default="English")
    royalty_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("70.00"))

    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    author_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    category: Mapped[Category | None] = relationship("Category", lazy="joined")
    author_user: Mapped[User | None] = relationship("User", lazy="select")

    @property
    def is_purchasable(self) -> bool:
        if self.status != "published" or not self.is_available:
            return False
        return self.stock is None or self.stock > 0

    def to_dict(self, *, average_rating: float | None = None, review_count: int | None = None) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "author": self.author,
            "author_user_id": self.author_user_id,
            "description": self.description,
            "excerpt": self.excerpt,
            "price": money_str(self.price),
            "cover_image": self.cover_image,
            "status": self.status,
            "category": self.category.name if self.category else None,
            "category_id": self.category_id,
            "tags": list(self.tags or []),
            "stock": self.stock,
            "is_available": self.is_available,
            "has_file": bool(self.book_file_key),
            "isbn": self.isbn,
            "page_count": self.page_count,
            "language": self.language,
            "royalty_rate": money_str(self.royalty_rate),
            "sales_count": self.sales_count,
            "published_at": iso(self.published_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if average_rating is not None:
            data["average_rating"] = average_rating
        if review_count is not None:
            data["review_count"] = review_count
        return data


class BookReview(Base):
    __tablename__ = "book_reviews"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_book_reviews_user_book"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_book_reviews_rating"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_verified_purchase: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user": {"id": self.user_id, "name": self.user.display_name if self.user else None},
            "rating": self.rating,
            "comment": self.comment,
            "is_verified_purchase": self.is_verified_purchase,
            "created_at": iso(self.created_at),
        }
