from __future__ import annotations

import json
import logging
import secrets
import string
import time
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from flask import current_app

from app.edify.audit import record_event
from app.edify.errors import ApiError, Conflict, NotFound, ValidationFailed
from app.edify.modules.orders.models import Order
from app.edify.modules.orders.service import mark_order_paid, mark_payment_failed
from app.edify.modules.payments.base import GatewayClient, PaymentGatewayError, VerifiedPayment
from app.edify.modules.payments.flutterwave import FlutterwaveClient, flutterwave_from_config
from app.edify.modules.payments.models import PaymentTransaction
from app.edify.modules.payments.momo import MOMO_CURRENCIES, MtnMomoClient, momo_from_config
from app.edify.modules.payments.paystack import PaystackClient, paystack_from_config
from app.edify.utils import clean_str, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

logger = logging.getLogger(__name__)

PROVIDERS = ("paystack", "flutterwave", "mtn_momo")
_FACTORIES = {
    "paystack": paystack_from_config,
    "flutterwave": flutterwave_from_config,
    "mtn_momo": momo_from_config,
}
_PROVIDER_CURRENCIES = {
    "paystack": ("NGN", "USD", "GHS", "ZAR", "KES"),
    "flutterwave": ("NGN", "USD", "GBP", "EUR", "GHS", "KES", "ZAR", "UGX", "TZS"),
    "mtn_momo": MOMO_CURRENCIES,
}


# ---------- Provider selection ----------
def get_gateway(provider: str) -> GatewayClient:
    """Gateway client for a provider; `app.extensions["payment_gateways"]` overrides config-built clients."""
    if provider not in PROVIDERS:
        raise ValidationFailed([f"provider must be one of: {', '.join(PROVIDERS)}"])
    overrides = current_app.extensions.get("payment_gateways") or {}
    if provider in overrides:
        return overrides[provider]
    return _FACTORIES[provider](current_app.config)


def recommended_provider(currency: str | None) -> str:
    cur = (currency or "").upper()
    if cur == "NGN":
        return "paystack"
    if cur in ("USD", "GBP", "EUR"):
        return "flutterwave"
    return "paystack"


def available_providers(currency: str | None) -> list[str]:
    cur = (currency or "").upper()
    return [p for p in PROVIDERS if cur in _PROVIDER_CURRENCIES[p]]


def _rand(alphabet: str, n: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(n))


def generate_reference(provider: str, order: Order) -> str:
    ms = int(time.time() * 1000)
    if order.course_id:
        return f"COURSE-{order.order_number}"
    if provider == "paystack":
        return f"{order.order_number}-{uuid.uuid4().hex}"
    if provider == "flutterwave":
        return f"EDY-{ms}-{_rand(string.ascii_uppercase + string.digits, 6)}"
    return f"edify_{ms}_{_rand(string.ascii_lowercase + string.digits, 9)}"


@contextmanager
def gateway_errors():
    try:
        yield
    except PaymentGatewayError as e:
        logger.error("Gateway call failed provider=%s status=%s: %s", e.provider, e.status_code, e.message)
        raise ApiError(f"Payment provider error: {e.message}", 502) from e


# ---------- Transactions ----------
def find_transaction(s: "Session", reference: str) -> PaymentTransaction | None:
    return s.query(PaymentTransaction).filter(PaymentTransaction.reference == reference).one_or_none()


def _order_for_reference(s: "Session", reference: str) -> Order | None:
    tx = find_transaction(s, reference)
    if tx is not None:
        return tx.order
    return s.query(Order).filter(Order.payment_reference == reference).one_or_none()


def _new_transaction(
    s: "Session", order: Order, *, provider: str, reference: str, currency: str, metadata: dict | None = None
) -> PaymentTransaction:
    now = utcnow()
    tx = find_transaction(s, reference)
    if tx is None:
        tx = PaymentTransaction(order_id=order.id, reference=reference, created_at=now)
        s.add(tx)
    # Course references are per order, so a retried initialize reuses the row.
    tx.provider = provider
    tx.status = "pending"
    tx.amount = order.total
    tx.currency = currency
    tx.customer_email = order.user.email
    tx.metadata_json = metadata
    tx.updated_at = now
    order.payment_method = provider
    order.payment_reference = reference
    order.updated_at = now
    s.flush()
    return tx


def _upsert_transaction(s: "Session", order: Order, verified: VerifiedPayment, reference: str) -> PaymentTransaction:
    tx = find_transaction(s, reference)
    if tx is None:
        tx = _new_transaction(s, order, provider=verified.provider, reference=reference, currency=verified.currency or order.currency)
    tx.status = verified.status
    tx.provider_response = verified.raw
    if verified.transaction_id:
        tx.provider_transaction_id = verified.transaction_id
    if verified.amount is not None:
        tx.amount = verified.amount
    if verified.customer_email:
        tx.customer_email = verified.customer_email
    tx.verified_at = utcnow()
    tx.updated_at = tx.verified_at
    return tx


def _check_payable(order: Order) -> None:
    if order.payment_status == "completed":
        raise ApiError("Order has already been paid")
    if order.status != "pending":
        raise ApiError(f"Order cannot be paid while {order.status}")


def apply_verified_payment(
    s: "Session",
    order: Order,
    verified: VerifiedPayment,
    *,
    reference: str,
    actor: "User | None" = None,
) -> str:
    """
    Record a provider verification and apply it to the order.

    Returns "paid", "already_paid", "mismatch", "refund_required", "failed" or "pending".
    """
    if verified.reference and verified.reference != reference:
        logger.warning(
            "Verified %s payment reference=%s does not match expected reference=%s", verified.provider, verified.reference, reference
        )
        raise ApiError("Verified payment does not belong to this reference")
    if verified.transaction_id:
        claimed = (
            s.query(PaymentTransaction)
            .filter(
                PaymentTransaction.provider == verified.provider,
                PaymentTransaction.provider_transaction_id == verified.transaction_id,
                PaymentTransaction.reference != reference,
            )
            .first()
        )
        if claimed is not None:
            logger.warning(
                "%s transaction %s already recorded for reference=%s", verified.provider, verified.transaction_id, claimed.reference
            )
            raise Conflict("Provider transaction is already recorded for another payment")
    tx = _upsert_transaction(s, order, verified, reference)
    if verified.is_successful:
        outcome = mark_order_paid(
            s,
            order,
            amount=verified.amount,
            currency=verified.currency,
            reference=reference,
            provider=verified.provider,
            actor=actor,
        )
        if outcome == "mismatch":
            tx.status = "failed"
        return outcome
    if verified.is_failed:
        gateway_response = verified.raw.get("gateway_response") or verified.raw.get("processor_response") or verified.raw.get("reason")
        mark_payment_failed(s, order, reason=str(gateway_response or "Payment failed at provider"), reference=reference, actor=actor)
        return "failed"
    return "pending"


# ---------- Initialize ----------
def initialize_payment(
    s: "Session",
    order: Order,
    user: "User",
    *,
    provider: str,
    currency: str | None = None,
    callback_url: str | None = None,
    phone_number: str | None = None,
) -> dict[str, Any]:
    _check_payable(order)
    if provider == "bank_transfer":
        raise ApiError("Bank transfer payments are confirmed manually")
    currency = (currency or order.currency).upper()
    if currency != order.currency.upper():
        raise ApiError(f"Order is priced in {order.currency}; cannot pay in {currency}")
    if provider == "mtn_momo":
        return start_momo_payment(s, order, user, phone_number=phone_number, currency=currency)

    gateway = get_gateway(provider)
    reference = generate_reference(provider, order)
    callback_url = callback_url or f"{(current_app.config.get('APP_URL') or '').rstrip('/')}/api/payment/verify/{provider}"
    metadata = {"order_id": order.id, "order_number": order.order_number, "user_id": user.id}
    if order.course_id:
        metadata["course_id"] = order.course_id

    with gateway_errors():
        if isinstance(gateway, PaystackClient):
            data = gateway.initialize_transaction(
                email=order.user.email,
                amount=order.total,
                reference=reference,
                currency=currency,
                callback_url=callback_url,
                metadata=metadata,
            )
            checkout_url = data.get("authorization_url")
        elif isinstance(gateway, FlutterwaveClient):
            data = gateway.initialize_payment(
                tx_ref=reference,
                amount=order.total,
                currency=currency,
                redirect_url=callback_url,
                customer_email=order.user.email,
                customer_name=order.user.display_name,
                meta=metadata,
            )
            checkout_url = data.get("link")
        else:
            raise ApiError(f"Unsupported provider: {provider}")

    if not checkout_url:
        raise ApiError("Payment provider did not return a checkout URL", 502)

    tx = _new_transaction(s, order, provider=provider, reference=reference, currency=currency, metadata=metadata)
    record_event(
        s,
        actor=user,
        action="payment.initialize",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"provider": provider, "reference": reference},
    )
    logger.info("Payment initialized order=%s provider=%s reference=%s", order.order_number, provider, reference)
    result = {
        "provider": provider,
        "reference": reference,
        "authorization_url": checkout_url,
        "transaction": tx.to_dict(),
    }
    if data.get("access_code"):
        result["access_code"] = data["access_code"]
    return result


# ---------- Verify ----------
def _verify_with_provider(provider: str, reference: str, transaction_id: str | None = None) -> VerifiedPayment:
    gateway = get_gateway(provider)
    with gateway_errors():
        if isinstance(gateway, PaystackClient):
            return gateway.verify_transaction(reference)
        if isinstance(gateway, FlutterwaveClient):
            if transaction_id:
                return gateway.verify_transaction(transaction_id)
            return gateway.verify_by_reference(reference)
        if isinstance(gateway, MtnMomoClient):
            return gateway.get_transaction_status(reference)
    raise ApiError(f"Unsupported provider: {provider}")


def verify_payment(
    s: "Session",
    *,
    provider: str,
    reference: str,
    order: Order | None = None,
    transaction_id: str | None = None,
    actor: "User | None" = None,
) -> dict[str, Any]:
    if provider not in PROVIDERS:
        raise ValidationFailed([f"provider must be one of: {', '.join(PROVIDERS)}"])
    if order is None:
        order = _order_for_reference(s, reference)
        if order is None:
            raise NotFound("Payment reference not found")

    tx = find_transaction(s, reference)
    if tx is not None and tx.order_id != order.id:
        raise ApiError("Reference does not belong to this order")
    if (tx is not None and tx.status == "successful") or order.payment_status == "completed":
        return {"status": "already_verified", "order": order.to_dict()}

    verified = _verify_with_provider(provider, reference, transaction_id)
    outcome = apply_verified_payment(s, order, verified, reference=reference, actor=actor)
    return {"status": outcome, "order": order.to_dict(), "transaction": find_transaction(s, reference).to_dict()}


# ---------- Webhooks ----------
def _parse_event(body: bytes) -> dict[str, Any]:
    try:
        event = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError) as e:
        raise ApiError("Invalid webhook payload") from e
    if not isinstance(event, dict):
        raise ApiError("Invalid webhook payload")
    return event


def handle_paystack_webhook(s: "Session", body: bytes, signature: str | None) -> str:
    gateway = get_gateway("paystack")
    if not gateway.validate_webhook(body, signature):
        logger.warning("Rejected paystack webhook: invalid signature")
        raise ApiError("Invalid signature")
    event = _parse_event(body)
    name = str(event.get("event") or "")
    data = event.get("data") or {}

    if name.startswith("transfer."):
        logger.info("Paystack transfer event %s reference=%s", name, data.get("reference"))
        return "logged"
    if name not in ("charge.success", "charge.failed"):
        logger.info("Ignoring paystack event %s", name)
        return "ignored"

    verified = gateway.parse_transaction(data)
    if name == "charge.failed" and not verified.is_failed:
        verified = replace(verified, status="failed")
    order = _order_for_reference(s, verified.reference)
    if order is None:
        logger.warning("Paystack webhook for unknown reference=%s", verified.reference)
        return "ignored"
    return apply_verified_payment(s, order, verified, reference=verified.reference)


def handle_flutterwave_webhook(s: "Session", body: bytes, signature: str | None) -> str:
    gateway = get_gateway("flutterwave")
    if not gateway.validate_webhook(body, signature):
        logger.warning("Rejected flutterwave webhook: invalid signature")
        raise ApiError("Invalid signature")
    event = _parse_event(body)
    name = str(event.get("event") or event.get("event.type") or "")
    data = event.get("data") or {}

    if name.startswith("transfer."):
        logger.info("Flutterwave transfer event %s reference=%s", name, data.get("reference"))
        return "logged"
    if name not in ("charge.completed", "charge.failed"):
        logger.info("Ignoring flutterwave event %s", name)
        return "ignored"

    tx_ref = clean_str(data.get("tx_ref"))
    if not tx_ref:
        logger.warning("Flutterwave webhook without tx_ref event=%s", name)
        return "ignored"
    order = _order_for_reference(s, tx_ref)
    if order is None:
        logger.warning("Flutterwave webhook for unknown reference=%s", tx_ref)
        return "ignored"

    if name == "charge.completed" and str(data.get("status") or "").lower() == "successful":
        # Payload status is not trusted; confirm with the API before applying.
        transaction_id = str(data["id"]) if data.get("id") is not None else None
        verified = _verify_with_provider("flutterwave", tx_ref, transaction_id)
    else:
        verified = gateway.parse_transaction(data, fallback_reference=tx_ref)
        if verified.status == "pending" and name == "charge.failed":
            verified = replace(verified, status="failed")
    return apply_verified_payment(s, order, verified, reference=tx_ref)


# ---------- MTN MoMo ----------
def start_momo_payment(
    s: "Session",
    order: Order,
    user: "User",
    *,
    phone_number: str | None,
    currency: str | None,
) -> dict[str, Any]:
    _check_payable(order)
    currency = (currency or order.currency).upper()
    if currency not in MOMO_CURRENCIES:
        raise ApiError(f"MTN MoMo supports only {', '.join(MOMO_CURRENCIES)}")
    if currency != order.currency.upper():
        raise ApiError(f"Order is priced in {order.currency}; cannot pay in {currency}")
    phone = clean_str(phone_number)
    if not phone:
        raise ValidationFailed(["phone_number is required."])

    gateway = get_gateway("mtn_momo")
    reference = generate_reference("mtn_momo", order)
    callback_url = f"{(current_app.config.get('APP_URL') or '').rstrip('/')}/api/payment/mtn-momo/callback"
    with gateway_errors():
        gateway.request_to_pay(
            reference=reference,
            amount=order.total,
            currency=currency,
            phone_number=phone,
            payer_message=f"Payment for order {order.order_number}",
            payee_note=f"EdifyPub order {order.order_number}",
            callback_url=callback_url,
        )
    tx = _new_transaction(
        s, order, provider="mtn_momo", reference=reference, currency=currency, metadata={"phone_number": phone}
    )
    record_event(
        s,
        actor=user,
        action="payment.initialize",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"provider": "mtn_momo", "reference": reference},
    )
    logger.info("MoMo request-to-pay sent order=%s reference=%s", order.order_number, reference)
    return {
        "provider": "mtn_momo",
        "reference": reference,
        "status": "pending",
        "message": "Approve the payment on your phone",
        "transaction": tx.to_dict(),
    }


def handle_momo_callback(s: "Session", payload: dict[str, Any]) -> str:
    reference = clean_str(payload.get("externalId") or payload.get("referenceId"))
    if not reference:
        raise ValidationFailed(["externalId is required."])
    order = _order_for_reference(s, reference)
    if order is None:
        logger.warning("MoMo callback for unknown reference=%s", reference)
        raise NotFound("Payment reference not found")
    tx = find_transaction(s, reference)
    if (tx is not None and tx.status == "successful") or order.payment_status == "completed":
        return "already_verified"
    # Callbacks are unsigned; the status is confirmed against the API.
    verified = _verify_with_provider("mtn_momo", reference)
    claimed = str(payload.get("status") or "").upper()
    if claimed and verified.status == "pending":
        logger.info("MoMo callback status=%s still pending at API reference=%s", claimed, reference)
    return apply_verified_payment(s, order, verified, reference=reference)
