from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edify.models import Base
from app.edify.modules.catalog.models import Book
from app.edify.utils import iso, money_str, utcnow


class BookPreorder(Base):
    __tablename__ = "book_preorders"
    __table_args__ = (
        CheckConstraint("preorder_end > preorder_start", name="ck_book_preorders_window"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    preorder_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    preorder_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    release_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    early_access_discount: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0.00"))  # percent
    max_preorder_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    current_preorder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    preorder_benefits: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    book: Mapped[Book] = relationship("Book", lazy="joined")

    def is_open(self, now: datetime) -> bool:
        return bool(self.is_active and self.preorder_start <= now <= self.preorder_end)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "book": {
                "id": self.book.id,
                "title": self.book.title,
                "author": self.book.author,
                "price": money_str(self.book.price),
                "cover_image": self.book.cover_image,
            }
            if self.book
            else None,
            "preorder_start": iso(self.preorder_start),
            "preorder_end": iso(self.preorder_end),
            "release_date": iso(self.release_date),
            "early_access_discount": money_str(self.early_access_discount),
            "max_preorder_quantity": self.max_preorder_quantity,
            "current_preorder_count": self.current_preorder_count,
            "preorder_benefits": list(self.preorder_benefits or []),
            "is_active": self.is_active,
        }


class PreorderPurchase(Base):
    __tablename__ = "preorder_purchases"
    __table_args__ = (
        UniqueConstraint("preorder_id", "user_id", name="uq_preorder_purchases_preorder_user"),
        CheckConstraint("quantity >= 1", name="ck_preorder_purchases_quantity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    preorder_id: Mapped[int] = mapped_column(ForeignKey("book_preorders.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, paid, fulfilled, cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "preorder_id": self.preorder_id,
            "user_id": self.user_id,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "discount_applied": money_str(self.discount_applied),
            "total": money_str(self.total),
            "status": self.status,
            "created_at": iso(self.created_at),
        }
