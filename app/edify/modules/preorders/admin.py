from __future__ import annotations

from flask import Blueprint, request

from app.edify.audit import record_event
from app.edify.db import db_session
from app.edify.errors import NotFound
from app.edify.modules.preorders.models import BookPreorder
from app.edify.modules.preorders.service import create_preorder, list_all_preorders, update_preorder
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import ok

bp = Blueprint("preorders_admin", __name__)


def _get_preorder(s, preorder_id: int) -> BookPreorder:
    preorder = s.get(BookPreorder, preorder_id)
    if not preorder:
        raise NotFound("Preorder not found")
    return preorder


@bp.get("/preorders")
@require_permission("preorders.manage")
def preorders_list():
    s = db_session()
    return ok(list_all_preorders(s))


@bp.post("/preorders")
@require_permission("preorders.manage")
def preorders_create():
    s = db_session()
    preorder = create_preorder(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(preorder.to_dict(), message="Preorder created", status=201)


@bp.put("/preorders/<int:preorder_id>")
@require_permission("preorders.manage")
def preorders_update(preorder_id: int):
    s = db_session()
    preorder = update_preorder(s, _get_preorder(s, preorder_id), request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(preorder.to_dict(), message="Preorder updated")


@bp.delete("/preorders/<int:preorder_id>")
@require_permission("preorders.manage")
def preorders_delete(preorder_id: int):
    s = db_session()
    preorder = _get_preorder(s, preorder_id)
    record_event(s, actor=login_required_user(), action="preorder.delete", entity_type="BookPreorder", entity_id=str(preorder.id))
    s.delete(preorder)
    s.commit()
    return ok({"id": preorder_id}, message="Preorder deleted")
