"""Tests for coupons module."""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.edify.db import session_scope
from app.edify.models import AuditEvent
from app.edify.modules.coupons.models import Coupon, CouponUsage
from app.edify.modules.coupons.service import compute_discount
from app.edify.modules.orders.models import Order
from app.edify.utils import utcnow


def _create(admin_client, **kw):
    payload = {"code": "save10", "name": "Save ten", "type": "percentage", "value": 10}
    payload.update(kw)
    r = admin_client.post("/admin/coupons", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]


@pytest.mark.parametrize(
    "ctype,value,cap,amount,expected",
    [
        ("percentage", "20", None, "1000.00", "200.00"),
        ("percentage", "50", "300.00", "1000.00", "300.00"),
        ("percentage", "12.5", None, "99.99", "12.50"),
        ("fixed", "500", None, "1000.00", "500.00"),
        ("fixed", "500", None, "350.00", "350.00"),
    ],
)
def test_compute_discount(ctype, value, cap, amount, expected):
    coupon = Coupon(type=ctype, value=Decimal(value), max_discount_amount=Decimal(cap) if cap else None)
    assert compute_discount(coupon, Decimal(amount)) == Decimal(expected)


def test_admin_create_and_duplicate(admin_client):
    data = _create(admin_client, max_discount_amount="250")
    assert data["code"] == "SAVE10"
    assert data["applies_to"] == "all"
    assert data["user_limit"] == 1
    assert data["max_discount_amount"] == "250.00"

    r = admin_client.post("/admin/coupons", json={"code": "SAVE10", "name": "Again", "type": "fixed", "value": 5})
    assert r.status_code == 409


def test_admin_create_validation(admin_client, reader_client):
    r = admin_client.post("/admin/coupons", json={"code": "BIG", "name": "Too big", "type": "percentage", "value": 150})
    assert r.status_code == 400
    assert "Percentage value must be between 0 and 100." in r.json["details"]

    r = admin_client.post(
        "/admin/coupons",
        json={"code": "bad code!", "name": "", "type": "bogus", "value": 0, "applies_to": "specific", "expires_at": "soon"},
    )
    details = r.json["details"]
    assert r.status_code == 400
    assert "Name is required." in details
    assert "applicable_items is required when applies_to is 'specific'." in details
    assert "expires_at must be an ISO-8601 date/time." in details

    assert reader_client.post("/admin/coupons", json={"code": "X"}).status_code == 403


def test_validate_happy_path(admin_client, reader_client):
    _create(admin_client, code="HALF", type="percentage", value=50, max_discount_amount="400")
    r = reader_client.post("/api/coupons/validate", json={"code": "half", "order_amount": "1000"})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["coupon"]["code"] == "HALF"
    assert data["discount"] == "400.00"
    assert data["final_amount"] == "600.00"


def test_validate_failures(admin_client, reader_client):
    now = utcnow()
    _create(admin_client, code="OFF", is_active=False)
    _create(admin_client, code="LATER", starts_at=(now + timedelta(days=2)).isoformat())
    _create(admin_client, code="OLD", expires_at=(now - timedelta(days=1)).isoformat())
    _create(admin_client, code="MIN", min_order_amount="5000")
    _create(admin_client, code="COURSESONLY", applies_to="courses")

    def err(code, amount="1000", items=None):
        r = reader_client.post("/api/coupons/validate", json={"code": code, "order_amount": amount, "items": items or []})
        assert r.status_code == 400
        return r.json["error"]

    assert err("NOPE") == "Invalid coupon code"
    assert err("OFF") == "This coupon is no longer active"
    assert err("LATER") == "This coupon is not yet available"
    assert err("OLD") == "This coupon has expired"
    assert err("MIN") == "Minimum order amount of 5000.00 required"
    assert err("COURSESONLY", items=[{"type": "book", "id": 1}]) == "This coupon is not applicable to the items in your order"

    r = reader_client.post("/api/coupons/validate", json={"code": "COURSESONLY", "order_amount": "10", "items": [{"type": "course", "id": 3}]})
    assert r.status_code == 200

    r = reader_client.post("/api/coupons/validate", json={"code": "", "order_amount": "x"})
    assert r.status_code == 400
    assert r.json["details"] == ["Coupon code and order amount are required."]


def test_specific_items_scope(admin_client, reader_client):
    _create(admin_client, code="ONEBOOK", type="fixed", value=100, applies_to="specific", applicable_items=[{"type": "book", "id": 7}])
    ok = reader_client.post("/api/coupons/validate", json={"code": "ONEBOOK", "order_amount": 500, "items": [{"type": "book", "id": "7"}]})
    assert ok.status_code == 200
    assert ok.json["data"]["final_amount"] == "400.00"

    nope = reader_client.post("/api/coupons/validate", json={"code": "ONEBOOK", "order_amount": 500, "items": [{"type": "course", "id": 7}]})
    assert nope.status_code == 400


def test_coupon_applied_to_order_and_usage_limits(app, admin_client, reader_client, other_client, make_book, place_order, pay_order):
    coupon = _create(admin_client, code="ONCE", type="fixed", value=200, usage_limit=1)
    book_id = make_book(price="1000.00")

    order = place_order(reader_client, book_id, coupon_code="once")
    assert order["discount"] == "200.00"
    assert order["total"] == "800.00"
    assert order["coupon_code"] == "ONCE"
    pay_order(order["id"])

    with session_scope(app) as s:
        assert s.query(CouponUsage).filter(CouponUsage.coupon_id == coupon["id"]).count() == 1

    r = reader_client.post("/api/coupons/validate", json={"code": "ONCE", "order_amount": 1000})
    assert r.json["error"] == "This coupon has reached its usage limit"
    r = other_client.post("/api/orders", json={"book_id": book_id, "payment_method": "paystack", "coupon_code": "ONCE"})
    assert r.status_code == 400

    # Raising the overall limit leaves the per-user limit in force.
    admin_client.put(f"/admin/coupons/{coupon['id']}", json={"usage_limit": 10})
    r = reader_client.post("/api/coupons/validate", json={"code": "ONCE", "order_amount": 1000})
    assert r.json["error"] == "You have already used this coupon 1 time"
    r = other_client.post("/api/coupons/validate", json={"code": "ONCE", "order_amount": 1000})
    assert r.status_code == 200

    r = admin_client.get(f"/admin/coupons/{coupon['id']}")
    stats = r.json["data"]
    assert stats["total_uses"] == 1
    assert stats["unique_users"] == 1
    assert stats["total_discount"] == "200.00"
    assert stats["remaining_uses"] == 9


def test_list_and_delete(admin_client, reader_client, make_book, place_order, pay_order):
    used = _create(admin_client, code="USED", type="fixed", value=50)
    unused = _create(admin_client, code="UNUSED")
    _create(admin_client, code="GONE", expires_at=(utcnow() - timedelta(hours=1)).isoformat())

    order = place_order(reader_client, make_book(price="500.00"), coupon_code="USED")
    pay_order(order["id"])

    codes = {c["code"]: c for c in admin_client.get("/admin/coupons").json["data"]}
    assert set(codes) == {"USED", "UNUSED", "GONE"}
    assert codes["USED"]["usage_count"] == 1

    assert [c["code"] for c in admin_client.get("/admin/coupons?status=expired").json["data"]] == ["GONE"]
    assert {c["code"] for c in admin_client.get("/admin/coupons?status=active").json["data"]} == {"USED", "UNUSED"}

    assert admin_client.delete(f"/admin/coupons/{unused['id']}").json["data"]["outcome"] == "deleted"
    assert admin_client.delete(f"/admin/coupons/{used['id']}").json["data"]["outcome"] == "deactivated"
    assert [c["code"] for c in admin_client.get("/admin/coupons?status=inactive").json["data"]] == ["USED"]


def test_update_rejects_percentage_over_100(admin_client):
    coupon = _create(admin_client)
    r = admin_client.put(f"/admin/coupons/{coupon['id']}", json={"value": 120})
    assert r.status_code == 400
    r = admin_client.put(f"/admin/coupons/{coupon['id']}", json={"value": 120, "type": "fixed"})
    assert r.status_code == 200
    assert r.json["data"]["type"] == "fixed"


def test_limits_rechecked_when_pending_orders_are_paid(app, admin_client, reader_client, other_client, make_book, place_order, pay_order):
    coupon = _create(admin_client, code="ONCE", type="fixed", value=100)
    book_id = make_book(price="500.00")
    first = place_order(reader_client, book_id, coupon_code="ONCE")
    second = place_order(reader_client, book_id, coupon_code="ONCE")

    assert pay_order(first["id"]) == "paid"
    assert pay_order(second["id"]) == "refund_required"

    capped = _create(admin_client, code="TWOTOTAL", type="fixed", value=50, usage_limit=1, user_limit=5)
    mine = place_order(reader_client, book_id, coupon_code="TWOTOTAL")
    theirs = place_order(other_client, book_id, coupon_code="TWOTOTAL")
    assert pay_order(theirs["id"]) == "paid"
    assert pay_order(mine["id"]) == "refund_required"

    with session_scope(app) as s:
        usages = s.query(CouponUsage).filter(CouponUsage.coupon_id == coupon["id"]).all()
        assert [u.order_id for u in usages] == [first["id"]]
        assert s.query(CouponUsage).filter(CouponUsage.coupon_id == capped["id"]).count() == 1
        assert s.get(Order, second["id"]).payment_status == "failed"
        assert s.get(Order, mine["id"]).status == "pending"
        events = s.query(AuditEvent).filter(AuditEvent.action == "order.refund_required").order_by(AuditEvent.id).all()
        reasons = [e.reason for e in events]
        assert reasons == ["You have already used this coupon 1 time", "This coupon has reached its usage limit"]
