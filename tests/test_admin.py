"""Tests for the admin dashboard: stats, audit log and order export."""

import io

from openpyxl import load_workbook

from app.edify.admin import EXPORT_COLUMNS


def test_stats(admin_client, reader_client, client, make_book, place_order, pay_order):
    ngn = make_book(price="1000.00")
    usd = make_book(price="12.50")
    make_book(title="Unreleased", status="draft")

    paid_ngn = place_order(reader_client, ngn, quantity=2)
    pay_order(paid_ngn["id"])
    paid_usd = place_order(reader_client, usd, currency="USD", payment_method="flutterwave")
    pay_order(paid_usd["id"])
    place_order(reader_client, ngn)
    client.post("/api/newsletter/subscribe", json={"email": "fan@example.com"})

    r = admin_client.get("/admin/stats")
    assert r.status_code == 200
    data = r.json["data"]
    assert data["users"] == 4
    assert data["published_books"] == 2
    assert data["orders_total"] == 3
    assert data["orders_by_status"] == {"confirmed": 2, "pending": 1}
    assert data["revenue"] == {"NGN": "2000.00", "USD": "12.50"}
    assert data["active_subscribers"] == 1
    assert data["enrollments"] == 0
    assert len(data["recent_orders"]) == 3
    assert data["recent_orders"][0]["customer"] == "reader@example.com"


def test_stats_requires_admin_view(client, reader_client):
    assert client.get("/admin/stats").status_code == 401
    assert reader_client.get("/admin/stats").status_code == 403


def test_audit_filters(admin_client, make_book, reader_client, place_order):
    order = place_order(reader_client, make_book())
    admin_client.put(f"/api/orders/{order['id']}", json={"status": "confirmed"})
    admin_client.post("/admin/coupons", json={"code": "AUDIT", "name": "Audit", "type": "fixed", "value": 5})

    events = admin_client.get("/admin/audit?action=order.status").json["data"]
    assert [e["action"] for e in events] == ["order.status_change"]
    assert events[0]["actor_user_email"] == "admin@example.com"

    events = admin_client.get("/admin/audit?actor_email=ADMIN@").json["data"]
    assert {"order.status_change", "coupon.create"} <= {e["action"] for e in events}

    assert admin_client.get("/admin/audit?limit=1").json["data"][0]["action"] == "coupon.create"
    assert admin_client.get("/admin/audit?date_to=2000-01-01").json["data"] == []

    r = admin_client.get("/admin/audit?date_from=01/02/2024")
    assert r.status_code == 400
    assert r.json["details"] == ["date_from must be YYYY-MM-DD"]


def test_orders_export(admin_client, reader_client, make_book, place_order, pay_order):
    book_id = make_book(price="300.00")
    paid = place_order(reader_client, book_id)
    pay_order(paid["id"], reference="PSK-9")
    place_order(reader_client, book_id)

    r = admin_client.get("/admin/orders/export")
    assert r.status_code == 200
    assert r.mimetype == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    assert "orders_export_" in r.headers["Content-Disposition"]

    ws = load_workbook(io.BytesIO(r.data)).active
    rows = list(ws.iter_rows(values_only=True))
    assert rows[0] == EXPORT_COLUMNS
    assert len(rows) == 3
    first = dict(zip(EXPORT_COLUMNS, rows[1]))
    assert first["Order #"] == paid["order_number"]
    assert first["Customer"] == "reader@example.com"
    assert first["Reference"] == "PSK-9"
    assert first["Total"] == 300

    r = admin_client.get("/admin/orders/export?status=pending")
    rows = list(load_workbook(io.BytesIO(r.data)).active.iter_rows(values_only=True))
    assert len(rows) == 2

    assert reader_client.get("/admin/orders/export").status_code == 403
