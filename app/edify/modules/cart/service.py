from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from app.edify.errors import NotFound, ValidationFailed
from app.edify.modules.cart.models import CartItem
from app.edify.modules.catalog.models import Book
from app.edify.utils import money_str, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

MAX_QUANTITY = 99


def _parse_quantity(raw, *, default: int | None = None, allow_zero: bool = False) -> int:
    if raw is None and default is not None:
        return default
    if isinstance(raw, bool):
        raise ValidationFailed(["Quantity must be an integer."])
    try:
        qty = int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationFailed(["Quantity must be an integer."]) from e
    floor = 0 if allow_zero else 1
    if qty < floor or qty > MAX_QUANTITY:
        raise ValidationFailed([f"Quantity must be between {floor} and {MAX_QUANTITY}."])
    return qty


def cart_items(s: "Session", user: "User") -> list[CartItem]:
    return s.query(CartItem).filter(CartItem.user_id == user.id).order_by(CartItem.added_at.asc(), CartItem.id.asc()).all()


def cart_summary(s: "Session", user: "User") -> dict:
    items = cart_items(s, user)
    total = sum((i.line_total for i in items), Decimal("0.00"))
    return {
        "items": [i.to_dict() for i in items],
        "total_amount": money_str(total),
        "item_count": sum(i.quantity for i in items),
    }


def add_to_cart(s: "Session", user: "User", payload: dict) -> CartItem:
    try:
        book_id = int(payload.get("book_id"))
    except (TypeError, ValueError) as e:
        raise ValidationFailed(["book_id is required."]) from e
    qty = _parse_quantity(payload.get("quantity"), default=1)

    book = s.get(Book, book_id)
    if not book or book.status != "published":
        raise NotFound("Book not found")
    if not book.is_purchasable:
        raise ValidationFailed(["Book is not available for purchase."])

    item = s.query(CartItem).filter(CartItem.user_id == user.id, CartItem.book_id == book_id).one_or_none()
    if item:
        item.quantity = min(item.quantity + qty, MAX_QUANTITY)
        item.updated_at = utcnow()
    else:
        now = utcnow()
        item = CartItem(user_id=user.id, book_id=book_id, quantity=qty, added_at=now, updated_at=now)
        item.book = book
        s.add(item)
    s.flush()
    return item


def _own_item(s: "Session", user: "User", item_id: int) -> CartItem:
    item = s.get(CartItem, item_id)
    if not item or item.user_id != user.id:
        raise NotFound("Cart item not found")
    return item


def update_cart_item(s: "Session", user: "User", item_id: int, payload: dict) -> CartItem | None:
    """Set quantity; 0 removes the line (returns None)."""
    item = _own_item(s, user, item_id)
    qty = _parse_quantity(payload.get("quantity"), allow_zero=True)
    if qty == 0:
        s.delete(item)
        return None
    item.quantity = qty
    item.updated_at = utcnow()
    return item


def remove_cart_item(s: "Session", user: "User", item_id: int) -> None:
    s.delete(_own_item(s, user, item_id))


def clear_cart(s: "Session", user: "User") -> int:
    return s.query(CartItem).filter(CartItem.user_id == user.id).delete(synchronize_session=False)
