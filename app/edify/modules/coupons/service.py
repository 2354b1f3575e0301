from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.edify.audit import record_event
from app.edify.errors import ApiError, Conflict, raise_if_errors
from app.edify.modules.coupons.models import COUPON_SCOPES, COUPON_TYPES, Coupon, CouponUsage
from app.edify.utils import TWO_PLACES, clean_str, money_str, parse_datetime, to_money, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

_SCOPE_ITEM_TYPE = {"books": "book", "courses": "course"}


@dataclass(frozen=True)
class CouponQuote:
    coupon: Coupon
    discount: Decimal
    final_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "coupon": self.coupon.to_public_dict(),
            "discount": money_str(self.discount),
            "final_amount": money_str(self.final_amount),
        }


def _item_matches(coupon: Coupon, item: dict) -> bool:
    if coupon.applies_to in _SCOPE_ITEM_TYPE:
        return item.get("type") == _SCOPE_ITEM_TYPE[coupon.applies_to]
    if coupon.applies_to == "specific":
        for allowed in coupon.applicable_items or []:
            if str(allowed.get("id")) != str(item.get("id")):
                continue
            if allowed.get("type") and item.get("type") and allowed["type"] != item["type"]:
                continue
            return True
    return False


def compute_discount(coupon: Coupon, order_amount: Decimal) -> Decimal:
    if coupon.type == "percentage":
        discount = order_amount * coupon.value / Decimal(100)
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = coupon.value
    discount = min(discount, order_amount)
    return discount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def usage_limit_error(s: "Session", coupon: Coupon, user_id: int) -> str | None:
    """Message for the first exhausted limit (total, then per user), or None. Only paid orders count as usage."""
    if coupon.usage_limit is not None:
        total_usage = s.query(func.count(CouponUsage.id)).filter(CouponUsage.coupon_id == coupon.id).scalar() or 0
        if total_usage >= coupon.usage_limit:
            return "This coupon has reached its usage limit"

    user_limit = coupon.user_limit or 1
    user_usage = (
        s.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon.id, CouponUsage.user_id == user_id)
        .scalar()
        or 0
    )
    if user_usage >= user_limit:
        return f"You have already used this coupon {user_limit} time{'s' if user_limit > 1 else ''}"
    return None


def validate_coupon(
    s: "Session",
    code: str,
    order_amount: Decimal,
    items: list[dict],
    user: "User",
    now: datetime | None = None,
) -> CouponQuote:
    """
    Check a coupon against an order. Checks run in a fixed order and the first
    failure is raised as ApiError(400) with a customer-facing message.
    """
    now = now or utcnow()
    coupon = s.query(Coupon).filter(Coupon.code == (code or "").strip().upper()).one_or_none()
    if coupon is None:
        raise ApiError("Invalid coupon code")
    if not coupon.is_active:
        raise ApiError("This coupon is no longer active")
    if coupon.starts_at and now < coupon.starts_at:
        raise ApiError("This coupon is not yet available")
    if coupon.expires_at and now > coupon.expires_at:
        raise ApiError("This coupon has expired")

    min_amount = coupon.min_order_amount or Decimal("0.00")
    if order_amount < min_amount:
        raise ApiError(f"Minimum order amount of {money_str(min_amount)} required")

    limit_error = usage_limit_error(s, coupon, user.id)
    if limit_error:
        raise ApiError(limit_error)

    if coupon.applies_to != "all" and not any(_item_matches(coupon, i) for i in items or []):
        raise ApiError("This coupon is not applicable to the items in your order")

    discount = compute_discount(coupon, order_amount)
    return CouponQuote(coupon=coupon, discount=discount, final_amount=order_amount - discount)


def record_coupon_usage(s: "Session", coupon_id: int, user_id: int, order_id: int, discount: Decimal) -> bool:
    """Insert the usage row for an order once. Returns False when it already exists."""
    exists = s.query(CouponUsage.id).filter(CouponUsage.order_id == order_id).first()
    if exists:
        return False
    s.add(CouponUsage(coupon_id=coupon_id, user_id=user_id, order_id=order_id, discount_amount=discount, used_at=utcnow()))
    return True


# ---------- Admin ----------
def validate_coupon_payload(payload: dict, *, partial: bool = False, current_type: str | None = None) -> list[str]:
    errors: list[str] = []
    if not partial or "code" in payload:
        code = clean_str(payload.get("code"))
        if not code:
            errors.append("Code is required.")
        elif len(code) > 64 or not code.replace("-", "").replace("_", "").isalnum():
            errors.append("Code may only contain letters, digits, '-' and '_' (max 64).")
    if not partial or "name" in payload:
        if not clean_str(payload.get("name")):
            errors.append("Name is required.")
    ctype = payload.get("type", current_type if partial else None)
    if not partial or "type" in payload:
        if ctype not in COUPON_TYPES:
            errors.append(f"Type must be one of: {', '.join(COUPON_TYPES)}")
    if not partial or "value" in payload:
        try:
            value = to_money(payload.get("value"))
            if value <= 0:
                errors.append("Value must be greater than 0.")
            elif ctype == "percentage" and value > 100:
                errors.append("Percentage value must be between 0 and 100.")
        except ValueError:
            errors.append("Value must be a number.")
    for key in ("min_order_amount", "max_discount_amount"):
        if payload.get(key) is not None:
            try:
                if to_money(payload[key]) < 0:
                    errors.append(f"{key} must be zero or positive.")
            except ValueError:
                errors.append(f"{key} must be a number.")
    for key in ("usage_limit", "user_limit"):
        if payload.get(key) is not None:
            try:
                if int(payload[key]) < 1:
                    errors.append(f"{key} must be at least 1.")
            except (TypeError, ValueError):
                errors.append(f"{key} must be an integer.")
    applies_to = payload.get("applies_to")
    if applies_to is not None and applies_to not in COUPON_SCOPES:
        errors.append(f"applies_to must be one of: {', '.join(COUPON_SCOPES)}")
    if applies_to == "specific" and not payload.get("applicable_items"):
        errors.append("applicable_items is required when applies_to is 'specific'.")
    for key in ("starts_at", "expires_at"):
        if payload.get(key):
            try:
                parse_datetime(payload[key])
            except ValueError:
                errors.append(f"{key} must be an ISO-8601 date/time.")
    return errors


def _apply_coupon_fields(coupon: Coupon, payload: dict) -> None:
    if "code" in payload:
        coupon.code = payload["code"].strip().upper()
    for attr in ("name", "description"):
        if attr in payload:
            setattr(coupon, attr, clean_str(payload.get(attr)))
    if "type" in payload:
        coupon.type = payload["type"]
    if "value" in payload:
        coupon.value = to_money(payload["value"])
    if "min_order_amount" in payload:
        raw = payload.get("min_order_amount")
        coupon.min_order_amount = to_money(raw) if raw is not None else Decimal("0.00")
    if "max_discount_amount" in payload:
        raw = payload.get("max_discount_amount")
        coupon.max_discount_amount = to_money(raw) if raw is not None else None
    if "usage_limit" in payload:
        raw = payload.get("usage_limit")
        coupon.usage_limit = int(raw) if raw is not None else None
    if "user_limit" in payload:
        coupon.user_limit = int(payload.get("user_limit") or 1)
    if "applies_to" in payload:
        coupon.applies_to = payload["applies_to"]
    if "applicable_items" in payload:
        coupon.applicable_items = list(payload.get("applicable_items") or [])
    if "starts_at" in payload:
        coupon.starts_at = parse_datetime(payload.get("starts_at")) or utcnow()
    if "expires_at" in payload:
        coupon.expires_at = parse_datetime(payload.get("expires_at"))
    if "is_active" in payload:
        coupon.is_active = bool(payload["is_active"])


def create_coupon(s: "Session", payload: dict, user: "User") -> Coupon:
    raise_if_errors(validate_coupon_payload(payload))
    code = payload["code"].strip().upper()
    if s.query(Coupon.id).filter(Coupon.code == code).first():
        raise Conflict("Coupon code already exists")
    now = utcnow()
    coupon = Coupon(
        starts_at=now,
        applies_to="all",
        applicable_items=[],
        user_limit=1,
        min_order_amount=Decimal("0.00"),
        is_active=True,
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _apply_coupon_fields(coupon, payload)
    s.add(coupon)
    s.flush()
    record_event(s, actor=user, action="coupon.create", entity_type="Coupon", entity_id=str(coupon.id), metadata={"code": coupon.code})
    return coupon


def update_coupon(s: "Session", coupon: Coupon, payload: dict, user: "User") -> Coupon:
    raise_if_errors(validate_coupon_payload(payload, partial=True, current_type=coupon.type))
    if "code" in payload:
        code = payload["code"].strip().upper()
        if s.query(Coupon.id).filter(Coupon.code == code, Coupon.id != coupon.id).first():
            raise Conflict("Coupon code already exists")
    if "value" in payload and "type" not in payload and coupon.type == "percentage" and to_money(payload["value"]) > 100:
        raise_if_errors(["Percentage value must be between 0 and 100."])
    _apply_coupon_fields(coupon, payload)
    coupon.updated_at = utcnow()
    record_event(s, actor=user, action="coupon.update", entity_type="Coupon", entity_id=str(coupon.id), metadata={"fields": sorted(payload)})
    return coupon


def delete_coupon(s: "Session", coupon: Coupon, user: "User") -> str:
    """Deactivate coupons that were used; hard-delete unused ones."""
    used = s.query(CouponUsage.id).filter(CouponUsage.coupon_id == coupon.id).first() is not None
    if used:
        coupon.is_active = False
        coupon.updated_at = utcnow()
        outcome = "deactivated"
    else:
        s.delete(coupon)
        outcome = "deleted"
    record_event(s, actor=user, action=f"coupon.{outcome}", entity_type="Coupon", entity_id=str(coupon.id), metadata={"code": coupon.code})
    return outcome


def list_coupons(s: "Session", status: str | None, now: datetime | None = None) -> list[dict]:
    now = now or utcnow()
    q = s.query(Coupon)
    if status == "active":
        q = q.filter(Coupon.is_active.is_(True), (Coupon.expires_at.is_(None)) | (Coupon.expires_at > now))
    elif status == "expired":
        q = q.filter(Coupon.expires_at.isnot(None), Coupon.expires_at <= now)
    elif status == "inactive":
        q = q.filter(Coupon.is_active.is_(False))
    coupons = q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()
    usage = dict(
        s.query(CouponUsage.coupon_id, func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id.in_([c.id for c in coupons] or [0]))
        .group_by(CouponUsage.coupon_id)
        .all()
    )
    out = []
    for c in coupons:
        d = c.to_dict()
        d["usage_count"] = int(usage.get(c.id, 0))
        out.append(d)
    return out


def coupon_usage_stats(s: "Session", coupon: Coupon) -> dict:
    total_uses, total_discount, unique_users = s.query(
        func.count(CouponUsage.id),
        func.coalesce(func.sum(CouponUsage.discount_amount), 0),
        func.count(func.distinct(CouponUsage.user_id)),
    ).filter(CouponUsage.coupon_id == coupon.id).one()
    recent = (
        s.query(CouponUsage)
        .filter(CouponUsage.coupon_id == coupon.id)
        .order_by(CouponUsage.used_at.desc())
        .limit(20)
        .all()
    )
    remaining = None
    if coupon.usage_limit is not None:
        remaining = max(coupon.usage_limit - int(total_uses), 0)
    return {
        "coupon": coupon.to_dict(),
        "total_uses": int(total_uses),
        "unique_users": int(unique_users),
        "total_discount": money_str(Decimal(total_discount)),
        "remaining_uses": remaining,
        "recent": [
            {
                "user_id": u.user_id,
                "order_id": u.order_id,
                "discount_amount": money_str(u.discount_amount),
                "used_at": u.used_at.isoformat(),
            }
            for u in recent
        ],
    }
