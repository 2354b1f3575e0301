import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.edify import create_app
from app.edify.constants import ROLE_AUTHOR, ROLE_READER
from app.edify.db import session_scope
from app.edify.models import Base, Role, User
from app.edify.modules.catalog.models import Book
from app.edify.modules.payments.base import PaymentGatewayError
from app.edify.modules.payments.flutterwave import FlutterwaveClient
from app.edify.modules.payments.momo import MtnMomoClient
from app.edify.modules.payments.paystack import PaystackClient
from app.edify.security import ALL_LIMITERS
from app.edify.utils import slugify, utcnow
from scripts.init_db import seed

ADMIN = ("admin@example.com", "admin-pass-1")
READER = ("reader@example.com", "reader-pass-1")
OTHER_READER = ("other@example.com", "other-pass-1")
AUTHOR = ("author@example.com", "author-pass-1")

PAYSTACK_SECRET = "sk_test_paystack"
FLUTTERWAVE_HASH = "fw-secret-hash"


# ---------- Fake gateways ----------
# Each fake answers request_json from canned data so the real client parsing runs.
@dataclass(frozen=True)
class FakePaystack(PaystackClient):
    transactions: dict = field(default_factory=dict, compare=False)
    calls: list = field(default_factory=list, compare=False)
    fail: list = field(default_factory=list, compare=False)

    def request_json(self, method, path, *, json=None, params=None, headers=None, auth=None, retries=2):
        self.calls.append((method, path, json))
        if self.fail:
            raise PaymentGatewayError(self.provider, self.fail[0], status_code=503)
        if method == "POST" and path == "/transaction/initialize":
            ref = json["reference"]
            return {
                "status": True,
                "data": {"authorization_url": f"https://checkout.paystack.test/{ref}", "access_code": "AC_test", "reference": ref},
            }
        if method == "GET" and path.startswith("/transaction/verify/"):
            ref = path.rsplit("/", 1)[-1]
            return {"status": True, "data": self.transactions.get(ref, {"reference": ref, "status": "ongoing"})}
        raise AssertionError(f"unexpected paystack call {method} {path}")

    def succeed(self, reference, amount, currency="NGN", **extra):
        self.transactions[reference] = {
            "id": 9001 + len(self.transactions),
            "reference": reference,
            "status": "success",
            "amount": int(Decimal(amount) * 100),
            "currency": currency,
            "customer": {"email": "payer@example.com"},
            **extra,
        }


@dataclass(frozen=True)
class FakeFlutterwave(FlutterwaveClient):
    transactions: dict = field(default_factory=dict, compare=False)
    calls: list = field(default_factory=list, compare=False)

    def request_json(self, method, path, *, json=None, params=None, headers=None, auth=None, retries=2):
        self.calls.append((method, path, json or params))
        if method == "POST" and path == "/payments":
            return {"status": "success", "data": {"link": f"https://checkout.flutterwave.test/{json['tx_ref']}"}}
        if method == "GET" and path == "/transactions/verify_by_reference":
            ref = params["tx_ref"]
            return {"data": self.transactions.get(ref, {"tx_ref": ref, "status": "pending"})}
        if method == "GET" and path.startswith("/transactions/") and path.endswith("/verify"):
            tx_id = path.split("/")[2]
            for data in self.transactions.values():
                if str(data.get("id")) == tx_id:
                    return {"data": data}
            raise PaymentGatewayError(self.provider, "Transaction not found", status_code=404)
        raise AssertionError(f"unexpected flutterwave call {method} {path}")

    def succeed(self, tx_ref, amount, currency="USD", tx_id=5150):
        self.transactions[tx_ref] = {
            "id": tx_id,
            "tx_ref": tx_ref,
            "status": "successful",
            "amount": str(amount),
            "currency": currency,
            "customer": {"email": "payer@example.com"},
        }


@dataclass(frozen=True)
class FakeMomo(MtnMomoClient):
    statuses: dict = field(default_factory=dict, compare=False)
    calls: list = field(default_factory=list, compare=False)

    def request_json(self, method, path, *, json=None, params=None, headers=None, auth=None, retries=2):
        self.calls.append((method, path, json, headers))
        if path == "/collection/token/":
            return {"access_token": "momo-token"}
        if method == "POST" and path == "/collection/v1_0/requesttopay":
            return {}
        if method == "GET" and path.startswith("/collection/v1_0/requesttopay/"):
            ref = path.rsplit("/", 1)[-1]
            return self.statuses.get(ref, {"externalId": ref, "status": "PENDING"})
        raise AssertionError(f"unexpected momo call {method} {path}")


# ---------- App / clients ----------
@pytest.fixture()
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("APP_URL", "https://edify.test")
    monkeypatch.setenv("MAIL_BACKEND", "console")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "0")
    monkeypatch.setenv("NEWSLETTER_BATCH_DELAY", "0")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "DEFAULT_CURRENCY",
        "PAYSTACK_SECRET_KEY",
        "FLUTTERWAVE_SECRET_KEY",
        "FLUTTERWAVE_SECRET_HASH",
    ):
        monkeypatch.delenv(k, raising=False)


@pytest.fixture()
def gateways():
    return {
        "paystack": FakePaystack(base_url="https://paystack.test", secret_key=PAYSTACK_SECRET),
        "flutterwave": FakeFlutterwave(base_url="https://flutterwave.test", secret_key="FLWSECK_TEST", secret_hash=FLUTTERWAVE_HASH),
        "mtn_momo": FakeMomo(base_url="https://momo.test", subscription_key="sub", user_id="uid", api_key="key"),
    }


@pytest.fixture()
def app(env, gateways):
    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s, admin_email=ADMIN[0], admin_password=ADMIN[1])
        s.flush()
        roles = {r.key: r for r in s.query(Role).all()}
        for (email, pw), role_key in ((READER, ROLE_READER), (OTHER_READER, ROLE_READER), (AUTHOR, ROLE_AUTHOR)):
            u = User(email=email, name=email.split("@")[0].title(), password_hash=generate_password_hash(pw), is_active=True)
            u.roles.append(roles[role_key])
            s.add(u)

    app.extensions["payment_gateways"] = gateways
    for limiter in ALL_LIMITERS:
        limiter.reset()
    yield app
    for limiter in ALL_LIMITERS:
        limiter.reset()


def _attach_csrf(client):
    token = client.get("/auth/csrf").json["data"]["csrf_token"]
    client.environ_base["HTTP_X_CSRF_TOKEN"] = token
    return client


@pytest.fixture()
def client(app):
    """Anonymous client carrying a valid CSRF token."""
    return _attach_csrf(app.test_client())


@pytest.fixture()
def login(app):
    def _login(email, password):
        c = app.test_client()
        r = c.post("/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.json
        return _attach_csrf(c)

    return _login


@pytest.fixture()
def admin_client(login):
    return login(*ADMIN)


@pytest.fixture()
def reader_client(login):
    return login(*READER)


@pytest.fixture()
def other_client(login):
    return login(*OTHER_READER)


@pytest.fixture()
def user_ids(app):
    with session_scope(app) as s:
        return {u.email: u.id for u in s.query(User).all()}


@pytest.fixture()
def outbox(app):
    return app.extensions.setdefault("mail_outbox", [])


# ---------- Data helpers ----------
@pytest.fixture()
def make_book(app):
    counter = {"n": 0}

    def _make(**kw):
        counter["n"] += 1
        now = utcnow()
        fields = {
            "title": f"The Quiet Garden {counter['n']}",
            "author": "Ada Obi",
            "price": Decimal("2500.00"),
            "status": "published",
            "tags": [],
            "created_at": now,
            "updated_at": now,
        }
        fields.update(kw)
        fields["price"] = Decimal(str(fields["price"]))
        fields.setdefault("slug", slugify(fields["title"]))
        if fields["status"] == "published":
            fields.setdefault("published_at", now - timedelta(minutes=counter["n"]))
        with session_scope(app) as s:
            book = Book(**fields)
            s.add(book)
            s.flush()
            return book.id

    return _make


@pytest.fixture()
def place_order():
    def _place(client, book_id, *, quantity=1, currency=None, payment_method="paystack", **extra):
        payload = {"items": [{"book_id": book_id, "quantity": quantity}], "payment_method": payment_method, **extra}
        if currency:
            payload["currency"] = currency
        r = client.post("/api/orders", json=payload)
        assert r.status_code == 201, r.json
        return r.json["data"]

    return _place


def paystack_signature(body: bytes) -> str:
    return hmac.new(PAYSTACK_SECRET.encode("utf-8"), body, hashlib.sha512).hexdigest()


@pytest.fixture()
def signed_paystack():
    def _sign(event: dict) -> tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        return body, paystack_signature(body)

    return _sign


@pytest.fixture()
def pay_order(app):
    """Apply a successful payment to an order the way a verified gateway callback would."""
    from app.edify.modules.orders.models import Order
    from app.edify.modules.orders.service import mark_order_paid

    def _pay(order_id, *, amount=None, currency=None, reference="manual-ref"):
        with app.test_request_context():
            with session_scope(app) as s:
                order = s.get(Order, order_id)
                return mark_order_paid(
                    s,
                    order,
                    amount=order.total if amount is None else Decimal(str(amount)),
                    currency=currency or order.currency,
                    reference=reference,
                    provider="paystack",
                )

    return _pay
