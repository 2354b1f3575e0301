"""Tests for payment initialization, verification, webhooks and MTN MoMo."""

import json

from app.edify.db import session_scope
from app.edify.modules.orders.models import Order
from app.edify.modules.payments.models import PaymentTransaction

FLUTTERWAVE_HASH = "fw-secret-hash"


def _initialize(client, order_id, **kw):
    return client.post("/api/payment/initialize", json={"order_id": order_id, **kw})


def test_providers_by_currency(client):
    r = client.get("/api/payment/providers?currency=usd")
    assert r.json["data"] == {"currency": "USD", "recommended": "flutterwave", "available": ["paystack", "flutterwave", "mtn_momo"]}

    r = client.get("/api/payment/providers")
    assert r.json["data"]["currency"] == "NGN"
    assert r.json["data"]["recommended"] == "paystack"
    assert r.json["data"]["available"] == ["paystack", "flutterwave"]


def test_paystack_initialize(app, reader_client, make_book, place_order, gateways):
    order = place_order(reader_client, make_book(price="2500.00"))

    r = _initialize(reader_client, order["id"], payment_method="paystack")
    assert r.status_code == 200
    data = r.json["data"]
    assert data["provider"] == "paystack"
    assert data["reference"].startswith(order["order_number"] + "-")
    assert data["authorization_url"] == f"https://checkout.paystack.test/{data['reference']}"
    assert data["access_code"] == "AC_test"
    assert data["transaction"]["status"] == "pending"
    assert data["transaction"]["amount"] == "2500.00"

    method, path, body = gateways["paystack"].calls[-1]
    assert (method, path) == ("POST", "/transaction/initialize")
    assert body["amount"] == 250000
    assert body["email"] == "reader@example.com"
    assert body["callback_url"] == "https://edify.test/api/payment/verify/paystack"
    assert body["metadata"]["order_id"] == order["id"]

    with session_scope(app) as s:
        assert s.get(Order, order["id"]).payment_reference == data["reference"]


def test_initialize_rejections(reader_client, other_client, make_book, place_order, pay_order, gateways):
    book_id = make_book()
    order = place_order(reader_client, book_id)

    r = _initialize(reader_client, order["id"], payment_method="paystack", currency="USD")
    assert r.status_code == 400
    assert r.json["error"] == "Order is priced in NGN; cannot pay in USD"

    r = _initialize(reader_client, order["id"], payment_method="bank_transfer")
    assert r.json["error"] == "Bank transfer payments are confirmed manually"

    assert _initialize(reader_client, order["id"], payment_method="stripe").status_code == 400
    assert _initialize(other_client, order["id"], payment_method="paystack").status_code == 404
    assert _initialize(reader_client, None).status_code == 400

    gateways["paystack"].fail.append("Service unavailable")
    r = _initialize(reader_client, order["id"], payment_method="paystack")
    assert r.status_code == 502
    assert r.json["error"] == "Payment provider error: Service unavailable"
    gateways["paystack"].fail.clear()

    paid = place_order(reader_client, book_id)
    pay_order(paid["id"])
    r = _initialize(reader_client, paid["id"], payment_method="paystack")
    assert r.json["error"] == "Order has already been paid"

    cancelled = place_order(reader_client, book_id)
    reader_client.post(f"/api/orders/{cancelled['id']}/cancel")
    r = _initialize(reader_client, cancelled["id"], payment_method="paystack")
    assert r.json["error"] == "Order cannot be paid while cancelled"


def test_paystack_verify_success_then_already_verified(app, reader_client, make_book, place_order, gateways, outbox):
    order = place_order(reader_client, make_book(price="1200.00"))
    reference = _initialize(reader_client, order["id"], payment_method="paystack").json["data"]["reference"]

    r = reader_client.post("/api/payment/verify", json={"reference": reference, "provider": "paystack", "order_id": order["id"]})
    assert r.status_code == 200
    assert r.json["data"]["status"] == "pending"
    assert r.json["message"] == "Payment is still pending"

    gateways["paystack"].succeed(reference, "1200.00")
    r = reader_client.post("/api/payment/verify", json={"reference": reference, "provider": "paystack", "order_id": order["id"]})
    assert r.json["data"]["status"] == "paid"
    assert r.json["message"] == "Payment verified successfully"
    assert r.json["data"]["order"]["payment_status"] == "completed"
    assert r.json["data"]["order"]["status"] == "confirmed"
    assert r.json["data"]["transaction"]["status"] == "successful"

    calls_before = len(gateways["paystack"].calls)
    r = reader_client.post("/api/payment/verify", json={"reference": reference, "provider": "paystack", "order_id": order["id"]})
    assert r.json["data"]["status"] == "already_verified"
    assert r.json["message"] == "Payment already verified"
    assert len(gateways["paystack"].calls) == calls_before

    with session_scope(app) as s:
        tx = s.query(PaymentTransaction).filter(PaymentTransaction.reference == reference).one()
        assert tx.customer_email == "payer@example.com"
        assert tx.verified_at is not None
    assert len([m for m in outbox if m.subject.startswith("Payment received")]) == 1


def test_verify_failed_and_mismatch(reader_client, make_book, place_order, gateways):
    book_id = make_book(price="1000.00")

    failed = place_order(reader_client, book_id)
    ref = _initialize(reader_client, failed["id"], payment_method="paystack").json["data"]["reference"]
    gateways["paystack"].transactions[ref] = {"reference": ref, "status": "failed", "amount": 100000, "currency": "NGN", "gateway_response": "Declined"}
    r = reader_client.post("/api/payment/verify", json={"reference": ref, "provider": "paystack", "order_id": failed["id"]})
    assert r.status_code == 400
    assert r.json["error"] == "Payment verification failed"
    assert r.json["details"]["order"]["payment_status"] == "failed"

    short = place_order(reader_client, book_id)
    ref = _initialize(reader_client, short["id"], payment_method="paystack").json["data"]["reference"]
    gateways["paystack"].succeed(ref, "10.00")
    r = reader_client.post("/api/payment/verify", json={"reference": ref, "provider": "paystack", "order_id": short["id"]})
    assert r.status_code == 400
    assert r.json["error"] == "Payment amount or currency does not match the order"
    assert r.json["details"]["order"]["payment_status"] == "failed"


def test_verify_reference_must_match_order(reader_client, make_book, place_order):
    book_id = make_book()
    a = place_order(reader_client, book_id)
    b = place_order(reader_client, book_id)
    ref_a = _initialize(reader_client, a["id"], payment_method="paystack").json["data"]["reference"]

    r = reader_client.post("/api/payment/verify", json={"reference": ref_a, "provider": "paystack", "order_id": b["id"]})
    assert r.status_code == 400
    assert r.json["error"] == "Reference does not belong to this order"

    r = reader_client.post("/api/payment/verify", json={"provider": "paystack", "order_id": a["id"]})
    assert r.status_code == 400


def test_checkout_redirect_verifies_without_login(app, reader_client, make_book, place_order, gateways):
    order = place_order(reader_client, make_book(price="700.00"))
    ref = _initialize(reader_client, order["id"], payment_method="paystack").json["data"]["reference"]
    gateways["paystack"].succeed(ref, "700.00")

    anon = app.test_client()
    r = anon.get(f"/api/payment/verify/paystack?trxref={ref}")
    assert r.status_code == 200
    assert r.json["data"]["status"] == "paid"

    assert anon.get("/api/payment/verify/paystack?reference=unknown-ref").status_code == 404
    assert anon.get("/api/payment/verify/paystack").status_code == 400


def test_paystack_webhook(app, reader_client, make_book, place_order, signed_paystack):
    order = place_order(reader_client, make_book(price="900.00"))
    ref = _initialize(reader_client, order["id"], payment_method="paystack").json["data"]["reference"]
    hook = app.test_client()

    event = {"event": "charge.success", "data": {"reference": ref, "status": "success", "amount": 90000, "currency": "NGN"}}
    body, sig = signed_paystack(event)
    r = hook.post("/api/webhooks/paystack", data=body, headers={"x-paystack-signature": "0" * 128}, content_type="application/json")
    assert r.status_code == 400
    assert r.json["error"] == "Invalid signature"

    r = hook.post("/api/webhooks/paystack", data=body, headers={"x-paystack-signature": sig}, content_type="application/json")
    assert r.status_code == 200
    assert r.json["data"]["outcome"] == "paid"

    # Redelivery is harmless.
    r = hook.post("/api/webhooks/paystack", data=body, headers={"x-paystack-signature": sig}, content_type="application/json")
    assert r.json["data"]["outcome"] == "already_paid"

    for event, outcome in (
        ({"event": "transfer.success", "data": {"reference": "TRF-1"}}, "logged"),
        ({"event": "subscription.create", "data": {}}, "ignored"),
        ({"event": "charge.success", "data": {"reference": "nobody", "status": "success"}}, "ignored"),
    ):
        body, sig = signed_paystack(event)
        r = hook.post("/api/webhooks/paystack", data=body, headers={"x-paystack-signature": sig}, content_type="application/json")
        assert r.json["data"]["outcome"] == outcome

    with session_scope(app) as s:
        assert s.get(Order, order["id"]).payment_status == "completed"


def test_paystack_charge_failed_webhook(app, reader_client, make_book, place_order, signed_paystack):
    order = place_order(reader_client, make_book())
    ref = _initialize(reader_client, order["id"], payment_method="paystack").json["data"]["reference"]

    body, sig = signed_paystack({"event": "charge.failed", "data": {"reference": ref, "status": "ongoing"}})
    r = app.test_client().post("/api/webhooks/paystack", data=body, headers={"x-paystack-signature": sig}, content_type="application/json")
    assert r.json["data"]["outcome"] == "failed"

    with session_scope(app) as s:
        assert s.get(Order, order["id"]).payment_status == "failed"


def test_flutterwave_initialize_and_webhook_reverifies(app, reader_client, make_book, place_order, gateways):
    order = place_order(reader_client, make_book(price="40.00"), currency="USD", payment_method="flutterwave")
    r = _initialize(reader_client, order["id"])
    assert r.status_code == 200
    data = r.json["data"]
    assert data["provider"] == "flutterwave"
    assert data["reference"].startswith("EDY-")
    assert data["authorization_url"] == f"https://checkout.flutterwave.test/{data['reference']}"
    ref = data["reference"]

    hook = app.test_client()
    event = {"event": "charge.completed", "data": {"id": 5150, "tx_ref": ref, "status": "successful", "amount": 40, "currency": "USD"}}
    body = json.dumps(event)

    r = hook.post("/api/webhooks/flutterwave", data=body, headers={"verif-hash": "wrong"}, content_type="application/json")
    assert r.status_code == 400

    # The API still reports the charge as pending, so the payload claim is not applied.
    gateways["flutterwave"].transactions[ref] = {"id": 5150, "tx_ref": ref, "status": "pending", "amount": "40.00", "currency": "USD"}
    r = hook.post("/api/webhooks/flutterwave", data=body, headers={"verif-hash": FLUTTERWAVE_HASH}, content_type="application/json")
    assert r.json["data"]["outcome"] == "pending"

    gateways["flutterwave"].succeed(ref, "40.00", tx_id=5150)
    r = hook.post("/api/webhooks/flutterwave", data=body, headers={"verif-hash": FLUTTERWAVE_HASH}, content_type="application/json")
    assert r.json["data"]["outcome"] == "paid"
    assert ("GET", "/transactions/5150/verify", None) in gateways["flutterwave"].calls

    with session_scope(app) as s:
        o = s.get(Order, order["id"])
        assert o.payment_status == "completed"
        assert o.currency == "USD"


def test_flutterwave_verify_by_reference(reader_client, make_book, place_order, gateways):
    order = place_order(reader_client, make_book(price="25.00"), currency="GBP", payment_method="flutterwave")
    ref = _initialize(reader_client, order["id"], payment_method="flutterwave").json["data"]["reference"]
    gateways["flutterwave"].succeed(ref, "25.00", currency="GBP", tx_id=77)

    r = reader_client.post("/api/payment/verify", json={"reference": ref, "provider": "flutterwave", "order_id": order["id"]})
    assert r.json["data"]["status"] == "paid"
    assert gateways["flutterwave"].calls[-1][:2] == ("GET", "/transactions/verify_by_reference")


def test_flutterwave_transaction_cannot_pay_another_order(app, client, reader_client, make_book, place_order, gateways):
    book_id = make_book(price="40.00")
    first = place_order(reader_client, book_id, currency="USD", payment_method="flutterwave")
    second = place_order(reader_client, book_id, currency="USD", payment_method="flutterwave")
    ref1 = _initialize(reader_client, first["id"]).json["data"]["reference"]
    ref2 = _initialize(reader_client, second["id"]).json["data"]["reference"]

    gateways["flutterwave"].succeed(ref1, "40.00", tx_id=5150)
    r = reader_client.post(
        "/api/payment/verify", json={"reference": ref1, "provider": "flutterwave", "order_id": first["id"], "transaction_id": "5150"}
    )
    assert r.json["data"]["status"] == "paid"
    assert r.json["data"]["transaction"]["provider_transaction_id"] == "5150"

    r = reader_client.post(
        "/api/payment/verify", json={"reference": ref2, "provider": "flutterwave", "order_id": second["id"], "transaction_id": "5150"}
    )
    assert r.status_code == 400
    assert r.json["error"] == "Verified payment does not belong to this reference"

    r = client.get(f"/api/payment/verify/flutterwave?tx_ref={ref2}&transaction_id=5150")
    assert r.status_code == 400

    # Same provider transaction reported under the second reference.
    gateways["flutterwave"].succeed(ref2, "40.00", tx_id=5150)
    r = reader_client.post("/api/payment/verify", json={"reference": ref2, "provider": "flutterwave", "order_id": second["id"]})
    assert r.status_code == 409

    with session_scope(app) as s:
        assert s.get(Order, second["id"]).payment_status == "pending"
        assert s.query(PaymentTransaction).filter(PaymentTransaction.reference == ref2).one().status == "pending"


def test_momo_request_to_pay_and_callback(app, reader_client, make_book, place_order, gateways):
    order = place_order(reader_client, make_book(price="12.00"), currency="EUR", payment_method="mtn_momo")

    r = reader_client.post("/api/payment/mtn-momo", json={"order_id": order["id"]})
    assert r.status_code == 400
    assert r.json["details"] == ["phone_number is required."]

    r = reader_client.post("/api/payment/mtn-momo", json={"order_id": order["id"], "phone_number": "+233 (24) 123-4567"})
    assert r.status_code == 202
    data = r.json["data"]
    assert data["status"] == "pending"
    assert data["reference"].startswith("edify_")
    ref = data["reference"]

    _, path, body, headers = gateways["mtn_momo"].calls[-1]
    assert path == "/collection/v1_0/requesttopay"
    assert body["payer"] == {"partyIdType": "MSISDN", "partyId": "233241234567"}
    assert body["externalId"] == ref
    assert headers["X-Callback-Url"] == "https://edify.test/api/payment/mtn-momo/callback"

    hook = app.test_client()
    r = hook.post("/api/payment/mtn-momo/callback", json={"externalId": ref, "status": "SUCCESSFUL"})
    assert r.json["data"]["outcome"] == "pending"

    gateways["mtn_momo"].statuses[ref] = {
        "externalId": ref,
        "status": "SUCCESSFUL",
        "amount": "12.00",
        "currency": "EUR",
        "financialTransactionId": "FT-99",
    }
    r = hook.post("/api/payment/mtn-momo/callback", json={"externalId": ref, "status": "SUCCESSFUL"})
    assert r.json["data"]["outcome"] == "paid"
    r = hook.post("/api/payment/mtn-momo/callback", json={"externalId": ref})
    assert r.json["data"]["outcome"] == "already_verified"

    assert hook.post("/api/payment/mtn-momo/callback", json={"externalId": "edify_unknown"}).status_code == 404
    assert hook.post("/api/payment/mtn-momo/callback", json={}).status_code == 400

    with session_scope(app) as s:
        assert s.get(Order, order["id"]).payment_status == "completed"


def test_momo_currency_restrictions(reader_client, make_book, place_order):
    ngn = place_order(reader_client, make_book())
    r = _initialize(reader_client, ngn["id"], payment_method="mtn_momo", phone_number="0241234567")
    assert r.status_code == 400
    assert r.json["error"] == "MTN MoMo supports only USD, EUR"

    usd = place_order(reader_client, make_book(), currency="USD")
    r = _initialize(reader_client, usd["id"], payment_method="mtn_momo", phone_number="0241234567")
    assert r.status_code == 200
    assert r.json["data"]["provider"] == "mtn_momo"
