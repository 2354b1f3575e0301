from __future__ import annotations

import logging
import secrets
import string
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from sqlalchemy import update

from app.edify.audit import record_event
from app.edify.constants import SUPPORTED_CURRENCIES
from app.edify.emails import send_payment_confirmation
from app.edify.errors import ApiError, NotFound, ValidationFailed, raise_if_errors
from app.edify.modules.catalog.models import Book
from app.edify.modules.orders.models import (
    ORDER_STATUSES,
    ORDER_TRANSITIONS,
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
    AuthorRevenue,
    Order,
    OrderItem,
)
from app.edify.utils import TWO_PLACES, clean_str, money_str, parse_int_arg, to_money, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User
    from app.edify.modules.courses.models import Course

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("street", "city", "state", "country", "postal_code")
MAX_LINE_QUANTITY = 99


def generate_order_number() -> str:
    ts = str(int(time.time() * 1000))
    rand = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"ORD-{ts[-6:]}{rand}"


def validate_address(addr, label: str) -> list[str]:
    if addr is None:
        return []
    if not isinstance(addr, dict):
        return [f"{label} must be an object."]
    missing = [f for f in ADDRESS_FIELDS if not clean_str(addr.get(f))]
    if missing:
        return [f"{label} is missing: {', '.join(missing)}"]
    return []


def validate_order_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    method = payload.get("payment_method")
    if method not in PAYMENT_METHODS:
        errors.append(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    currency = clean_str(payload.get("currency"))
    if currency and currency.upper() not in SUPPORTED_CURRENCIES:
        errors.append(f"currency must be one of: {', '.join(SUPPORTED_CURRENCIES)}")
    has_items = bool(payload.get("items")) or payload.get("book_id") is not None or bool(payload.get("from_cart"))
    if not has_items:
        errors.append("Order must contain at least one item.")
    if payload.get("items") is not None and not isinstance(payload.get("items"), list):
        errors.append("items must be a list.")
    errors += validate_address(payload.get("shipping_address"), "Shipping address")
    errors += validate_address(payload.get("billing_address"), "Billing address")
    notes = payload.get("notes")
    if notes is not None and len(str(notes)) > 1000:
        errors.append("Notes too long (max 1000 characters).")
    return errors


def _requested_lines(s: "Session", user: "User", payload: dict) -> list[tuple[int, int]]:
    if payload.get("from_cart"):
        from app.edify.modules.cart.service import cart_items

        return [(i.book_id, i.quantity) for i in cart_items(s, user)]
    raw_items = payload.get("items") or [{"book_id": payload.get("book_id"), "quantity": payload.get("quantity", 1)}]
    lines: list[tuple[int, int]] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationFailed(["Each item must be an object with book_id and quantity."])
        try:
            book_id = int(raw.get("book_id"))
            qty = int(raw.get("quantity", 1))
        except (TypeError, ValueError) as e:
            raise ValidationFailed(["Each item needs an integer book_id and quantity."]) from e
        if qty < 1 or qty > MAX_LINE_QUANTITY:
            raise ValidationFailed([f"Quantity must be between 1 and {MAX_LINE_QUANTITY}."])
        lines.append((book_id, qty))
    return lines


def _merge_lines(lines: list[tuple[int, int]]) -> dict[int, int]:
    merged: dict[int, int] = {}
    for book_id, qty in lines:
        merged[book_id] = merged.get(book_id, 0) + qty
    return merged


def create_order(s: "Session", user: "User", payload: dict, *, default_currency: str) -> Order:
    raise_if_errors(validate_order_payload(payload))
    merged = _merge_lines(_requested_lines(s, user, payload))
    if not merged:
        raise ValidationFailed(["Your cart is empty."])

    order_items: list[OrderItem] = []
    subtotal = Decimal("0.00")
    for book_id, qty in merged.items():
        book = s.get(Book, book_id)
        if book is None or book.status != "published":
            raise NotFound(f"Book {book_id} not found")
        if not book.is_purchasable:
            raise ValidationFailed([f"'{book.title}' is not available for purchase."])
        if book.stock is not None and book.stock < qty:
            raise ValidationFailed([f"Only {book.stock} copies of '{book.title}' are in stock."])
        item = OrderItem(book_id=book.id, quantity=qty, unit_price=book.price)
        item.book = book
        order_items.append(item)
        subtotal += book.price * qty

    discount = Decimal("0.00")
    coupon = None
    code = clean_str(payload.get("coupon_code"))
    if code:
        from app.edify.modules.coupons.service import validate_coupon

        quote = validate_coupon(s, code, subtotal, [{"type": "book", "id": b} for b in merged], user)
        coupon, discount = quote.coupon, quote.discount

    shipping = payload.get("shipping_address")
    now = utcnow()
    order = Order(
        order_number=generate_order_number(),
        user_id=user.id,
        status="pending",
        payment_status="pending",
        payment_method=payload["payment_method"],
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
        currency=(clean_str(payload.get("currency")) or default_currency).upper(),
        coupon_id=coupon.id if coupon else None,
        coupon_code=coupon.code if coupon else None,
        shipping_address=shipping,
        billing_address=payload.get("billing_address") or shipping,
        notes=clean_str(payload.get("notes")),
        created_at=now,
        updated_at=now,
    )
    order.user = user
    order.items = order_items
    s.add(order)
    s.flush()

    if payload.get("from_cart"):
        from app.edify.modules.cart.service import clear_cart

        clear_cart(s, user)

    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"order_number": order.order_number, "total": money_str(order.total), "coupon": order.coupon_code},
    )
    return order


def create_course_order(s: "Session", user: "User", course: "Course", *, payment_method: str, currency: str) -> Order:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationFailed([f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}"])
    now = utcnow()
    order = Order(
        order_number=generate_order_number(),
        user_id=user.id,
        status="pending",
        payment_status="pending",
        payment_method=payment_method,
        subtotal=course.price,
        discount=Decimal("0.00"),
        total=course.price,
        currency=currency.upper(),
        course_id=course.id,
        notes=f"Course enrollment: {course.title}",
        created_at=now,
        updated_at=now,
    )
    order.user = user
    s.add(order)
    s.flush()
    record_event(s, actor=user, action="order.create", entity_type="Order", entity_id=str(order.id), metadata={"course_id": course.id})
    return order


def get_order_for(s: "Session", order_id: int, user: "User", *, can_manage: bool) -> Order:
    order = s.get(Order, order_id)
    # Someone else's order is reported as missing, not forbidden.
    if order is None or (order.user_id != user.id and not can_manage):
        raise NotFound("Order not found")
    return order


def list_orders(s: "Session", user: "User", args, *, can_manage: bool) -> dict:
    limit = parse_int_arg(args.get("limit"), 10, minimum=1, maximum=100)
    offset = parse_int_arg(args.get("offset"), 0, minimum=0)
    q = s.query(Order)
    if not can_manage:
        q = q.filter(Order.user_id == user.id)
    status = clean_str(args.get("status"))
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationFailed([f"status must be one of: {', '.join(ORDER_STATUSES)}"])
        q = q.filter(Order.status == status)
    payment_status = clean_str(args.get("payment_status"))
    if payment_status:
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationFailed([f"payment_status must be one of: {', '.join(PAYMENT_STATUSES)}"])
        q = q.filter(Order.payment_status == payment_status)
    search = clean_str(args.get("search"))
    if search:
        q = q.filter(Order.order_number.ilike(f"%{search}%"))
    total = q.count()
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return {
        "orders": [o.to_dict() for o in orders],
        "pagination": {"limit": limit, "offset": offset, "total": total, "has_more": offset + len(orders) < total},
    }


def change_status(s: "Session", order: Order, new_status: str, user: "User", *, reason: str | None = None) -> None:
    if new_status not in ORDER_STATUSES:
        raise ValidationFailed([f"status must be one of: {', '.join(ORDER_STATUSES)}"])
    if new_status == order.status:
        return
    if new_status not in ORDER_TRANSITIONS[order.status]:
        raise ApiError(f"Cannot change order status from {order.status} to {new_status}")
    old = order.status
    order.status = new_status
    order.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="order.status_change",
        entity_type="Order",
        entity_id=str(order.id),
        reason=reason,
        metadata={"from": old, "to": new_status},
    )


def update_order(s: "Session", order: Order, payload: dict, user: "User", *, can_manage: bool) -> Order:
    manager_fields = {"status", "tracking_number"}
    if not can_manage and manager_fields & set(payload):
        raise ApiError("Only notes can be changed on your order", 403)
    if "notes" in payload:
        notes = payload.get("notes")
        if notes is not None and len(str(notes)) > 1000:
            raise ValidationFailed(["Notes too long (max 1000 characters)."])
        order.notes = clean_str(notes)
    if can_manage:
        if "tracking_number" in payload:
            order.tracking_number = clean_str(payload.get("tracking_number"))
        if payload.get("status"):
            change_status(s, order, payload["status"], user, reason=clean_str(payload.get("reason")))
    order.updated_at = utcnow()
    return order


def cancel_order(s: "Session", order: Order, user: "User") -> Order:
    if order.payment_status == "completed":
        raise ApiError("Paid orders cannot be cancelled")
    change_status(s, order, "cancelled", user, reason="Cancelled by customer")
    return order


# ---------- Payment application ----------
def _refund_reason(s: "Session", order: Order) -> str | None:
    """Why a payment that covers the order must not be applied, or None."""
    if order.status == "cancelled":
        return "Order was cancelled before the payment arrived"
    if order.coupon_id:
        from app.edify.modules.coupons.models import Coupon
        from app.edify.modules.coupons.service import usage_limit_error

        coupon = s.get(Coupon, order.coupon_id)
        if coupon is not None:
            return usage_limit_error(s, coupon, order.user_id)
    return None


def _split_royalty(sale_amount: Decimal, royalty_rate: Decimal) -> tuple[Decimal, Decimal]:
    earning = (sale_amount * royalty_rate / Decimal(100)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return earning, sale_amount - earning


def mark_order_paid(
    s: "Session",
    order: Order,
    *,
    amount: Decimal | None,
    currency: str | None,
    reference: str | None,
    provider: str | None = None,
    actor: "User | None" = None,
) -> str:
    """
    Apply a verified payment to an order exactly once.

    Returns "paid" when applied, "already_paid" when the order was completed
    before (nothing changes), "mismatch" when the verified amount/currency
    does not cover the order (the payment is then marked failed), or
    "refund_required" when the money arrived but the order can no longer take
    it (cancelled, or its coupon ran out in the meantime).
    """
    if order.payment_status == "completed":
        return "already_paid"

    if amount is not None and to_money(amount) < order.total:
        mark_payment_failed(s, order, reason=f"Paid amount {money_str(to_money(amount))} below order total", reference=reference)
        return "mismatch"
    if currency and currency.upper() != order.currency.upper():
        mark_payment_failed(s, order, reason=f"Currency {currency.upper()} does not match order currency", reference=reference)
        return "mismatch"

    refund_reason = _refund_reason(s, order)
    if refund_reason:
        mark_payment_failed(s, order, reason=f"Refund required: {refund_reason}", reference=reference, actor=actor)
        record_event(
            s,
            actor=actor,
            action="order.refund_required",
            entity_type="Order",
            entity_id=str(order.id),
            reason=refund_reason,
            metadata={"reference": reference, "provider": provider, "amount": money_str(to_money(amount)) if amount is not None else None},
        )
        return "refund_required"

    now = utcnow()
    new_status = "confirmed" if order.status == "pending" else order.status
    # Conditional UPDATE: concurrent confirmations (webhook + redirect) race here, one wins.
    res = s.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status != "completed")
        .values(
            payment_status="completed",
            status=new_status,
            paid_at=now,
            payment_reference=reference or order.payment_reference,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        s.refresh(order)
        return "already_paid"
    s.refresh(order)

    for item in order.items:
        book = item.book
        line_total = item.line_total
        book.sales_count = (book.sales_count or 0) + item.quantity
        book.total_revenue = (book.total_revenue or Decimal("0.00")) + line_total
        if book.stock is not None:
            book.stock = max(book.stock - item.quantity, 0)
        if book.author_user_id:
            earning, fee = _split_royalty(line_total, book.royalty_rate)
            s.add(
                AuthorRevenue(
                    author_user_id=book.author_user_id,
                    book_id=book.id,
                    order_id=order.id,
                    sale_amount=line_total,
                    royalty_rate=book.royalty_rate,
                    author_earning=earning,
                    platform_fee=fee,
                    created_at=now,
                )
            )
            book.author_revenue = (book.author_revenue or Decimal("0.00")) + earning

    if order.coupon_id:
        from app.edify.modules.coupons.service import record_coupon_usage

        record_coupon_usage(s, order.coupon_id, order.user_id, order.id, order.discount)

    if order.course_id:
        from app.edify.modules.courses.service import ensure_enrollment

        ensure_enrollment(s, order.user, order.course_id)

    record_event(
        s,
        actor=actor,
        action="order.paid",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"reference": reference, "provider": provider, "total": money_str(order.total)},
    )
    s.flush()
    logger.info("Order paid order=%s reference=%s provider=%s", order.order_number, reference, provider)

    send_payment_confirmation(
        order.user.email,
        user_name=order.user.display_name,
        order_number=order.order_number,
        currency=order.currency,
        total=money_str(order.total),
        reference=reference,
        items=[{"title": i.book.title, "quantity": i.quantity, "line_total": money_str(i.line_total)} for i in order.items],
    )
    return "paid"


def mark_payment_failed(
    s: "Session",
    order: Order,
    *,
    reason: str,
    reference: str | None = None,
    actor: "User | None" = None,
) -> bool:
    """Mark payment failed unless the order is already paid. Returns True when changed."""
    if order.payment_status == "completed":
        return False
    order.payment_status = "failed"
    if reference:
        order.payment_reference = reference
    order.updated_at = utcnow()
    record_event(s, actor=actor, action="order.payment_failed", entity_type="Order", entity_id=str(order.id), reason=reason[:512], metadata={"reference": reference})
    logger.warning("Payment failed order=%s reference=%s reason=%s", order.order_number, reference, reason)
    return True
