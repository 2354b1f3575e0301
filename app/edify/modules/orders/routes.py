from __future__ import annotations

from flask import Blueprint, current_app, request

from app.edify.db import db_session
from app.edify.modules.orders.service import cancel_order, create_order, get_order_for, list_orders, update_order
from app.edify.rbac import login_required_user, require_login, user_has_permission
from app.edify.utils import ok

bp = Blueprint("orders", __name__)


def _can_manage(user) -> bool:
    return user_has_permission(user, "orders.manage")


@bp.get("/orders")
@require_login
def orders_list():
    s = db_session()
    user = login_required_user()
    return ok(list_orders(s, user, request.args, can_manage=_can_manage(user)))


@bp.post("/orders")
@require_login
def orders_create():
    s = db_session()
    user = login_required_user()
    order = create_order(
        s,
        user,
        request.get_json(silent=True) or {},
        default_currency=current_app.config.get("DEFAULT_CURRENCY") or "NGN",
    )
    s.commit()
    current_app.logger.info("Order created order=%s user=%s", order.order_number, user.id)
    return ok(order.to_dict(), message="Order created successfully", status=201)


@bp.get("/orders/<int:order_id>")
@require_login
def orders_detail(order_id: int):
    s = db_session()
    user = login_required_user()
    return ok(get_order_for(s, order_id, user, can_manage=_can_manage(user)).to_dict())


@bp.put("/orders/<int:order_id>")
@require_login
def orders_update(order_id: int):
    s = db_session()
    user = login_required_user()
    can_manage = _can_manage(user)
    order = get_order_for(s, order_id, user, can_manage=can_manage)
    update_order(s, order, request.get_json(silent=True) or {}, user, can_manage=can_manage)
    s.commit()
    return ok(order.to_dict(), message="Order updated")


@bp.post("/orders/<int:order_id>/cancel")
@require_login
def orders_cancel(order_id: int):
    s = db_session()
    user = login_required_user()
    order = get_order_for(s, order_id, user, can_manage=False)
    cancel_order(s, order, user)
    s.commit()
    return ok(order.to_dict(), message="Order cancelled")
