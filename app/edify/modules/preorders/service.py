from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from app.edify.audit import record_event
from app.edify.errors import ApiError, Conflict, NotFound, ValidationFailed, raise_if_errors
from app.edify.modules.catalog.models import Book
from app.edify.modules.preorders.models import BookPreorder, PreorderPurchase
from app.edify.utils import TWO_PLACES, money_str, parse_datetime, to_money, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User


def active_preorders_query(s: "Session", now: datetime):
    return s.query(BookPreorder).filter(
        BookPreorder.is_active.is_(True),
        BookPreorder.preorder_start <= now,
        BookPreorder.preorder_end >= now,
    )


def get_active_preorder(s: "Session", preorder_id: int, now: datetime | None = None) -> BookPreorder:
    now = now or utcnow()
    preorder = active_preorders_query(s, now).filter(BookPreorder.id == preorder_id).one_or_none()
    if preorder is None:
        raise NotFound("Preorder not found or not active")
    return preorder


def preorder_pricing(price: Decimal, discount_pct: Decimal) -> tuple[Decimal, Decimal]:
    """(discount per unit, final unit price)."""
    discount = (price * discount_pct / Decimal(100)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return discount, price - discount


def purchase_preorder(s: "Session", preorder_id: int, user: "User", payload: dict, now: datetime | None = None) -> dict:
    now = now or utcnow()
    raw_qty = payload.get("quantity", 1)
    if isinstance(raw_qty, bool) or not isinstance(raw_qty, int) or raw_qty < 1:
        raise ValidationFailed(["Quantity must be a positive integer."])
    quantity = raw_qty

    preorder = get_active_preorder(s, preorder_id, now)
    existing = (
        s.query(PreorderPurchase.id)
        .filter(PreorderPurchase.preorder_id == preorder.id, PreorderPurchase.user_id == user.id)
        .first()
    )
    if existing:
        raise Conflict("You have already preordered this book")

    # Reserve the quantity atomically; a stale read of current_preorder_count cannot oversell.
    res = s.execute(
        update(BookPreorder)
        .where(
            BookPreorder.id == preorder.id,
            or_(
                BookPreorder.max_preorder_quantity.is_(None),
                BookPreorder.current_preorder_count + quantity <= BookPreorder.max_preorder_quantity,
            ),
        )
        .values(current_preorder_count=BookPreorder.current_preorder_count + quantity, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise ApiError("Preorder quantity limit exceeded")

    price = preorder.book.price
    discount, final_price = preorder_pricing(price, preorder.early_access_discount)
    purchase = PreorderPurchase(
        preorder_id=preorder.id,
        user_id=user.id,
        quantity=quantity,
        unit_price=price,
        discount_applied=discount,
        total=final_price * quantity,
        status="pending",
        created_at=now,
    )
    s.add(purchase)
    try:
        s.flush()
    except IntegrityError as e:
        s.rollback()
        raise Conflict("You have already preordered this book") from e
    s.refresh(preorder)
    record_event(
        s,
        actor=user,
        action="preorder.purchase",
        entity_type="BookPreorder",
        entity_id=str(preorder.id),
        metadata={"quantity": quantity, "total": money_str(purchase.total)},
    )
    return {
        "purchase": purchase.to_dict(),
        "original_price": money_str(price),
        "discount_amount": money_str(discount),
        "final_price": money_str(final_price),
    }


# ---------- Admin ----------
def validate_preorder_payload(payload: dict, *, partial: bool = False, existing: BookPreorder | None = None) -> list[str]:
    errors: list[str] = []
    if not partial and payload.get("book_id") is None:
        errors.append("book_id is required.")
    start = end = None
    for key in ("preorder_start", "preorder_end", "release_date"):
        if key in payload:
            try:
                val = parse_datetime(payload.get(key))
            except ValueError:
                errors.append(f"{key} must be an ISO-8601 date/time.")
                continue
            if val is None and key != "release_date":
                errors.append(f"{key} is required.")
                continue
            if key == "preorder_start":
                start = val
            elif key == "preorder_end":
                end = val
        elif not partial and key != "release_date":
            errors.append(f"{key} is required.")
    if existing is not None:
        start = start or existing.preorder_start
        end = end or existing.preorder_end
    if start and end and end <= start:
        errors.append("preorder_end must be after preorder_start.")
    if "early_access_discount" in payload:
        try:
            pct = to_money(payload.get("early_access_discount"))
            if pct < 0 or pct > 100:
                errors.append("early_access_discount must be between 0 and 100.")
        except ValueError:
            errors.append("early_access_discount must be a number.")
    if payload.get("max_preorder_quantity") is not None:
        try:
            if int(payload["max_preorder_quantity"]) < 1:
                errors.append("max_preorder_quantity must be at least 1.")
        except (TypeError, ValueError):
            errors.append("max_preorder_quantity must be an integer.")
    if "preorder_benefits" in payload and not isinstance(payload.get("preorder_benefits"), list):
        errors.append("preorder_benefits must be a list.")
    return errors


def _apply_preorder_fields(preorder: BookPreorder, payload: dict) -> None:
    for key in ("preorder_start", "preorder_end", "release_date"):
        if key in payload:
            setattr(preorder, key, parse_datetime(payload.get(key)))
    if "early_access_discount" in payload:
        preorder.early_access_discount = to_money(payload["early_access_discount"])
    if "max_preorder_quantity" in payload:
        raw = payload.get("max_preorder_quantity")
        preorder.max_preorder_quantity = int(raw) if raw is not None else None
    if "preorder_benefits" in payload:
        preorder.preorder_benefits = [str(b) for b in payload.get("preorder_benefits") or []]
    if "is_active" in payload:
        preorder.is_active = bool(payload["is_active"])


def create_preorder(s: "Session", payload: dict, user: "User") -> BookPreorder:
    raise_if_errors(validate_preorder_payload(payload))
    book = s.get(Book, int(payload["book_id"]))
    if book is None:
        raise NotFound("Book not found")
    now = utcnow()
    preorder = BookPreorder(
        book_id=book.id,
        early_access_discount=Decimal("0.00"),
        current_preorder_count=0,
        preorder_benefits=[],
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    preorder.book = book
    _apply_preorder_fields(preorder, payload)
    s.add(preorder)
    s.flush()
    record_event(s, actor=user, action="preorder.create", entity_type="BookPreorder", entity_id=str(preorder.id), metadata={"book_id": book.id})
    return preorder


def update_preorder(s: "Session", preorder: BookPreorder, payload: dict, user: "User") -> BookPreorder:
    raise_if_errors(validate_preorder_payload(payload, partial=True, existing=preorder))
    _apply_preorder_fields(preorder, payload)
    preorder.updated_at = utcnow()
    record_event(s, actor=user, action="preorder.update", entity_type="BookPreorder", entity_id=str(preorder.id), metadata={"fields": sorted(payload)})
    return preorder


def list_all_preorders(s: "Session") -> list[dict]:
    preorders = s.query(BookPreorder).order_by(BookPreorder.created_at.desc(), BookPreorder.id.desc()).all()
    counts = dict(
        s.query(PreorderPurchase.preorder_id, func.count(PreorderPurchase.id))
        .group_by(PreorderPurchase.preorder_id)
        .all()
    )
    out = []
    for p in preorders:
        d = p.to_dict()
        d["purchase_count"] = int(counts.get(p.id, 0))
        out.append(d)
    return out
