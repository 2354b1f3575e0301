from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.modules.preorders.models import BookPreorder
from app.edify.modules.preorders.service import active_preorders_query, get_active_preorder, purchase_preorder
from app.edify.rbac import login_required_user, require_login
from app.edify.utils import ok, utcnow

bp = Blueprint("preorders", __name__)


@bp.get("/preorders")
def preorders_list():
    s = db_session()
    preorders = active_preorders_query(s, utcnow()).order_by(BookPreorder.preorder_end.asc()).all()
    return ok([p.to_dict() for p in preorders])


@bp.get("/preorders/<int:preorder_id>")
def preorders_detail(preorder_id: int):
    s = db_session()
    return ok(get_active_preorder(s, preorder_id).to_dict())


@bp.post("/preorders/<int:preorder_id>")
@require_login
def preorders_purchase(preorder_id: int):
    s = db_session()
    result = purchase_preorder(s, preorder_id, login_required_user(), request.get_json(silent=True) or {})
    s.commit()
    return ok(result, message="Preorder placed successfully", status=201)
