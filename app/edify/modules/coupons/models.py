from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.edify.models import Base
from app.edify.utils import iso, money_str, utcnow

COUPON_TYPES = ("percentage", "fixed")
COUPON_SCOPES = ("all", "books", "courses", "specific")


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # stored upper-case
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # percentage | fixed
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    min_order_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    user_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    applies_to: Mapped[str] = mapped_column(String(16), nullable=False, default="all")
    applicable_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # [{"type": "book", "id": 1}]
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "value": money_str(self.value),
        }

    def to_dict(self) -> dict:
        data = self.to_public_dict()
        data.update(
            {
                "description": self.description,
                "min_order_amount": money_str(self.min_order_amount),
                "max_discount_amount": money_str(self.max_discount_amount),
                "usage_limit": self.usage_limit,
                "user_limit": self.user_limit,
                "applies_to": self.applies_to,
                "applicable_items": list(self.applicable_items or []),
                "starts_at": iso(self.starts_at),
                "expires_at": iso(self.expires_at),
                "is_active": self.is_active,
                "created_at": iso(self.created_at),
            }
        )
        return data


class CouponUsage(Base):
    __tablename__ = "coupon_usage"
    __table_args__ = (
        Index("idx_coupon_usage_coupon_user", "coupon_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coupon_id: Mapped[int] = mapped_column(ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    # One usage row per order; makes repeated payment confirmations harmless.
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, unique=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
