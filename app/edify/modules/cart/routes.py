from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.modules.cart.service import add_to_cart, cart_summary, clear_cart, remove_cart_item, update_cart_item
from app.edify.rbac import login_required_user, require_login
from app.edify.utils import ok

bp = Blueprint("cart", __name__)


@bp.get("/cart")
@require_login
def cart_get():
    s = db_session()
    return ok(cart_summary(s, login_required_user()))


@bp.post("/cart")
@require_login
def cart_add():
    s = db_session()
    user = login_required_user()
    add_to_cart(s, user, request.get_json(silent=True) or {})
    s.commit()
    return ok(cart_summary(s, user), message="Added to cart", status=201)


@bp.put("/cart/<int:item_id>")
@require_login
def cart_update(item_id: int):
    s = db_session()
    user = login_required_user()
    item = update_cart_item(s, user, item_id, request.get_json(silent=True) or {})
    s.commit()
    return ok(cart_summary(s, user), message="Cart updated" if item else "Item removed")


@bp.delete("/cart/<int:item_id>")
@require_login
def cart_remove(item_id: int):
    s = db_session()
    user = login_required_user()
    remove_cart_item(s, user, item_id)
    s.commit()
    return ok(cart_summary(s, user), message="Item removed")


@bp.delete("/cart")
@require_login
def cart_clear():
    s = db_session()
    user = login_required_user()
    removed = clear_cart(s, user)
    s.commit()
    return ok({"removed": removed, **cart_summary(s, user)}, message="Cart cleared")
