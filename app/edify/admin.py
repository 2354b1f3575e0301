import io
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from flask import Blueprint, request, send_file
from openpyxl import Workbook
from sqlalchemy import func

from app.edify.audit import record_event
from app.edify.db import db_session
from app.edify.errors import ValidationFailed
from app.edify.models import AuditEvent, User
from app.edify.modules.catalog.models import Book
from app.edify.modules.courses.models import Enrollment
from app.edify.modules.newsletter.models import NewsletterSubscriber
from app.edify.modules.orders.models import Order
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import money_str, ok, parse_int_arg

bp = Blueprint("admin", __name__)

EXPORT_COLUMNS = (
    "Order #",
    "Created",
    "Customer",
    "Status",
    "Payment status",
    "Payment method",
    "Reference",
    "Subtotal",
    "Discount",
    "Total",
    "Currency",
    "Coupon",
    "Paid at",
)


def _parse_date(raw: str | None, field: str) -> date | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ValidationFailed([f"{field} must be YYYY-MM-DD"]) from e


def _date_window(q, column):
    date_from = _parse_date(request.args.get("date_from"), "date_from")
    date_to = _parse_date(request.args.get("date_to"), "date_to")
    if date_from:
        q = q.filter(column >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(column < datetime.combine(date_to + timedelta(days=1), time.min))
    return q


@bp.get("/stats")
@require_permission("admin.view")
def stats():
    s = db_session()
    orders_by_status = {status: int(n) for status, n in s.query(Order.status, func.count(Order.id)).group_by(Order.status)}
    revenue = {
        currency: money_str(total or Decimal("0"))
        for currency, total in s.query(Order.currency, func.sum(Order.total))
        .filter(Order.payment_status == "completed")
        .group_by(Order.currency)
    }
    recent = s.query(Order).order_by(Order.created_at.desc(), Order.id.desc()).limit(5).all()
    return ok(
        {
            "users": s.query(func.count(User.id)).scalar() or 0,
            "published_books": s.query(func.count(Book.id)).filter(Book.status == "published").scalar() or 0,
            "orders_total": sum(orders_by_status.values()),
            "orders_by_status": orders_by_status,
            "revenue": revenue,
            "active_subscribers": s.query(func.count(NewsletterSubscriber.id))
            .filter(NewsletterSubscriber.is_active.is_(True))
            .scalar()
            or 0,
            "enrollments": s.query(func.count(Enrollment.id)).scalar() or 0,
            "recent_orders": [
                {
                    "id": o.id,
                    "order_number": o.order_number,
                    "customer": o.user.email if o.user else None,
                    "status": o.status,
                    "payment_status": o.payment_status,
                    "total": money_str(o.total),
                    "currency": o.currency,
                    "created_at": o.created_at.isoformat() if o.created_at else None,
                }
                for o in recent
            ],
        }
    )


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Recent audit events, filtered by:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    limit = parse_int_arg(request.args.get("limit"), 200, minimum=1, maximum=500)
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    q = _date_window(q, AuditEvent.created_at)

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
    return ok([e.to_dict() for e in events])


@bp.get("/orders/export")
@require_permission("orders.manage")
def orders_export():
    s = db_session()
    q = s.query(Order)
    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(Order.status == status)
    q = _date_window(q, Order.created_at)
    orders = q.order_by(Order.created_at.asc(), Order.id.asc()).all()

    wb = Workbook()
    ws = wb.active
    ws.title = "Orders"
    ws.append(EXPORT_COLUMNS)
    for o in orders:
        ws.append(
            [
                o.order_number,
                o.created_at,
                o.user.email if o.user else "",
                o.status,
                o.payment_status,
                o.payment_method or "",
                o.payment_reference or "",
                float(o.subtotal),
                float(o.discount),
                float(o.total),
                o.currency,
                o.coupon_code or "",
                o.paid_at,
            ]
        )
    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)

    record_event(
        s,
        actor=login_required_user(),
        action="order.export",
        entity_type="Order",
        entity_id="export",
        metadata={"status": status or None, "row_count": len(orders)},
    )
    s.commit()

    filename = f"orders_export_{date.today().strftime('%Y%m%d')}.xlsx"
    return send_file(
        buf,
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )
