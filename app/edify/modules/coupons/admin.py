from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.errors import NotFound
from app.edify.modules.coupons.models import Coupon
from app.edify.modules.coupons.service import (
    coupon_usage_stats,
    create_coupon,
    delete_coupon,
    list_coupons,
    update_coupon,
)
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import ok

bp = Blueprint("coupons_admin", __name__)


def _get_coupon(s, coupon_id: int) -> Coupon:
    coupon = s.get(Coupon, coupon_id)
    if not coupon:
        raise NotFound("Coupon not found")
    return coupon


@bp.get("/coupons")
@require_permission("coupons.manage")
def coupons_list():
    s = db_session()
    status = (request.args.get("status") or "").strip().lower() or None
    return ok(list_coupons(s, status))


@bp.post("/coupons")
@require_permission("coupons.manage")
def coupons_create():
    s = db_session()
    coupon = create_coupon(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(coupon.to_dict(), message="Coupon created", status=201)


@bp.get("/coupons/<int:coupon_id>")
@require_permission("coupons.manage")
def coupons_detail(coupon_id: int):
    s = db_session()
    return ok(coupon_usage_stats(s, _get_coupon(s, coupon_id)))


@bp.put("/coupons/<int:coupon_id>")
@require_permission("coupons.manage")
def coupons_update(coupon_id: int):
    s = db_session()
    coupon = update_coupon(s, _get_coupon(s, coupon_id), request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(coupon.to_dict(), message="Coupon updated")


@bp.delete("/coupons/<int:coupon_id>")
@require_permission("coupons.manage")
def coupons_delete(coupon_id: int):
    s = db_session()
    outcome = delete_coupon(s, _get_coupon(s, coupon_id), login_required_user())
    s.commit()
    return ok({"id": coupon_id, "outcome": outcome}, message=f"Coupon {outcome}")
