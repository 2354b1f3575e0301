from __future__ import annotations

from flask import Blueprint, current_app, request

from app.edify.db import db_session
from app.edify.errors import ApiError, ValidationFailed
from app.edify.modules.orders.service import get_order_for
from app.edify.modules.payments.service import (
    available_providers,
    handle_flutterwave_webhook,
    handle_momo_callback,
    handle_paystack_webhook,
    initialize_payment,
    recommended_provider,
    start_momo_payment,
    verify_payment,
)
from app.edify.rbac import current_user, login_required_user, require_login, user_has_permission
from app.edify.security import PAYMENT_LIMITER, rate_limited
from app.edify.utils import clean_str, ok, parse_int_arg

bp = Blueprint("payments", __name__)

# Endpoints authenticated by provider signature (or API re-verification) rather than CSRF.
CSRF_EXEMPT_ENDPOINTS = frozenset({"payments.webhook_paystack", "payments.webhook_flutterwave", "payments.momo_callback"})

_FAILED_OUTCOMES = {
    "failed": "Payment verification failed",
    "mismatch": "Payment amount or currency does not match the order",
    "refund_required": "Payment received but the order can no longer be fulfilled; a refund is required",
}


def _owned_order(s, order_id):
    user = login_required_user()
    oid = parse_int_arg(str(order_id) if order_id is not None else None, 0, minimum=0)
    if not oid:
        raise ValidationFailed(["order_id is required."])
    return get_order_for(s, oid, user, can_manage=user_has_permission(user, "orders.manage")), user


def _verification_response(s, result: dict):
    status = result["status"]
    # Failure state is persisted before the error is reported.
    s.commit()
    if status in _FAILED_OUTCOMES:
        raise ApiError(_FAILED_OUTCOMES[status], details={"order": result["order"]})
    message = {
        "already_verified": "Payment already verified",
        "paid": "Payment verified successfully",
        "already_paid": "Payment already verified",
        "pending": "Payment is still pending",
    }.get(status)
    return ok(result, message=message)


@bp.get("/payment/providers")
def payment_providers():
    currency = (request.args.get("currency") or current_app.config.get("DEFAULT_CURRENCY") or "NGN").upper()
    return ok({"currency": currency, "recommended": recommended_provider(currency), "available": available_providers(currency)})


@bp.post("/payment/initialize")
@require_login
@rate_limited(PAYMENT_LIMITER)
def payment_initialize():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    order, user = _owned_order(s, payload.get("order_id"))
    provider = clean_str(payload.get("payment_method")) or recommended_provider(order.currency)
    result = initialize_payment(
        s,
        order,
        user,
        provider=provider,
        currency=clean_str(payload.get("currency")),
        callback_url=clean_str(payload.get("callback_url")),
        phone_number=clean_str(payload.get("phone_number")),
    )
    s.commit()
    return ok(result, message="Payment initialized")


@bp.post("/payment/verify")
@require_login
@rate_limited(PAYMENT_LIMITER)
def payment_verify():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    reference = clean_str(payload.get("reference"))
    provider = clean_str(payload.get("provider"))
    if not reference or not provider:
        raise ValidationFailed(["reference and provider are required."])
    order, user = _owned_order(s, payload.get("order_id"))
    result = verify_payment(
        s,
        provider=provider,
        reference=reference,
        order=order,
        transaction_id=clean_str(payload.get("transaction_id")),
        actor=user,
    )
    return _verification_response(s, result)


@bp.get("/payment/verify/<provider>")
@rate_limited(PAYMENT_LIMITER)
def payment_verify_redirect(provider: str):
    """Landing endpoint for the provider's checkout redirect."""
    s = db_session()
    reference = clean_str(request.args.get("reference") or request.args.get("trxref") or request.args.get("tx_ref"))
    if not reference:
        raise ValidationFailed(["reference is required."])
    result = verify_payment(
        s,
        provider=provider,
        reference=reference,
        transaction_id=clean_str(request.args.get("transaction_id")),
        actor=current_user(),
    )
    return _verification_response(s, result)


@bp.post("/webhooks/paystack")
def webhook_paystack():
    s = db_session()
    outcome = handle_paystack_webhook(s, request.get_data(), request.headers.get("x-paystack-signature"))
    s.commit()
    current_app.logger.info("Paystack webhook handled outcome=%s", outcome)
    return ok({"outcome": outcome}, message="Webhook received")


@bp.post("/webhooks/flutterwave")
def webhook_flutterwave():
    s = db_session()
    outcome = handle_flutterwave_webhook(s, request.get_data(), request.headers.get("verif-hash"))
    s.commit()
    current_app.logger.info("Flutterwave webhook handled outcome=%s", outcome)
    return ok({"outcome": outcome}, message="Webhook received")


@bp.post("/payment/mtn-momo")
@require_login
@rate_limited(PAYMENT_LIMITER)
def momo_start():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    order, user = _owned_order(s, payload.get("order_id"))
    result = start_momo_payment(
        s,
        order,
        user,
        phone_number=clean_str(payload.get("phone_number")),
        currency=clean_str(payload.get("currency")),
    )
    s.commit()
    return ok(result, message="Payment request sent", status=202)


@bp.post("/payment/mtn-momo/callback")
def momo_callback():
    s = db_session()
    outcome = handle_momo_callback(s, request.get_json(silent=True) or {})
    s.commit()
    current_app.logger.info("MoMo callback handled outcome=%s", outcome)
    return ok({"outcome": outcome})
