from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.modules.newsletter.service import subscribe, subscription_status, unsubscribe
from app.edify.security import NEWSLETTER_LIMITER, rate_limited
from app.edify.utils import ok

bp = Blueprint("newsletter", __name__)

# One-click unsubscribe links carry no session or token.
CSRF_EXEMPT_ENDPOINTS = frozenset({"newsletter.newsletter_unsubscribe"})

_SUBSCRIBE_MESSAGES = {
    "subscribed": "Successfully subscribed to newsletter!",
    "reactivated": "Welcome back! Your subscription has been reactivated.",
    "already_subscribed": "You're already subscribed to our newsletter",
}


@bp.post("/newsletter/subscribe")
@rate_limited(NEWSLETTER_LIMITER)
def newsletter_subscribe():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    outcome, sub = subscribe(s, payload.get("email"), payload.get("name"))
    s.commit()
    return ok(
        {"status": outcome, "subscriber": sub.to_dict()},
        message=_SUBSCRIBE_MESSAGES[outcome],
        status=201 if outcome == "subscribed" else 200,
    )


@bp.get("/newsletter/subscribe")
def newsletter_status():
    s = db_session()
    return ok(subscription_status(s, request.args.get("email")))


@bp.route("/newsletter/unsubscribe", methods=["GET", "POST"])
def newsletter_unsubscribe():
    s = db_session()
    email = request.args.get("email")
    if not email and request.method == "POST":
        email = (request.get_json(silent=True) or {}).get("email") or request.form.get("email")
    outcome, sub = unsubscribe(s, email)
    s.commit()
    message = "Email is already unsubscribed" if outcome == "already_unsubscribed" else "Successfully unsubscribed from newsletter"
    return ok({"status": outcome, "email": sub.email}, message=message)
