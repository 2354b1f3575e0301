from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edify.models import Base
from app.edify.modules.catalog.models import Book
from app.edify.utils import iso, money_str, utcnow


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_cart_items_user_book"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    book: Mapped[Book] = relationship("Book", lazy="joined")

    @property
    def line_total(self):
        return self.book.price * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "quantity": self.quantity,
            "line_total": money_str(self.line_total),
            "added_at": iso(self.added_at),
            "book": {
                "id": self.book.id,
                "title": self.book.title,
                "slug": self.book.slug,
                "author": self.book.author,
                "price": money_str(self.book.price),
                "cover_image": self.book.cover_image,
                "is_purchasable": self.book.is_purchasable,
            },
        }
