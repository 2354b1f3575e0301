from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.errors import ValidationFailed
from app.edify.modules.coupons.service import validate_coupon
from app.edify.rbac import login_required_user, require_login
from app.edify.security import COUPON_LIMITER, rate_limited
from app.edify.utils import ok, to_money

bp = Blueprint("coupons", __name__)


@bp.post("/coupons/validate")
@require_login
@rate_limited(COUPON_LIMITER)
def coupons_validate():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    code = (payload.get("code") or "").strip()
    try:
        amount = to_money(payload.get("order_amount"))
    except ValueError:
        amount = None
    if not code or amount is None or amount <= 0:
        raise ValidationFailed(["Coupon code and order amount are required."])
    items = payload.get("items") or []
    if not isinstance(items, list):
        raise ValidationFailed(["items must be a list."])
    quote = validate_coupon(s, code, amount, items, login_required_user())
    return ok(quote.to_dict())
