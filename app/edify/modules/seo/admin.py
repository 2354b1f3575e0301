from __future__ import annotations

from flask import Blueprint, current_app, request

from app.edify.db import db_session
from app.edify.errors import NotFound
from app.edify.modules.seo.models import SeoRedirect
from app.edify.modules.seo.service import (
    analytics,
    create_redirect,
    delete_redirect,
    delete_setting,
    list_settings,
    regenerate_sitemap,
    update_redirect,
    upsert_setting,
)
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import ok

bp = Blueprint("seo_admin", __name__)


def _get_redirect(s, redirect_id: int) -> SeoRedirect:
    redirect = s.get(SeoRedirect, redirect_id)
    if not redirect:
        raise NotFound("Redirect not found")
    return redirect


@bp.get("/seo/settings")
@require_permission("seo.manage")
def settings_list():
    s = db_session()
    return ok([x.to_dict() for x in list_settings(s, request.args.get("page_type"))])


@bp.post("/seo/settings")
@require_permission("seo.manage")
def settings_upsert():
    s = db_session()
    setting, created = upsert_setting(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(
        setting.to_dict(),
        message="SEO settings created" if created else "SEO settings updated",
        status=201 if created else 200,
    )


@bp.delete("/seo/settings/<int:setting_id>")
@require_permission("seo.manage")
def settings_delete(setting_id: int):
    s = db_session()
    delete_setting(s, setting_id, login_required_user())
    s.commit()
    return ok({"id": setting_id}, message="SEO settings deleted")


@bp.get("/seo/redirects")
@require_permission("seo.manage")
def redirects_list():
    s = db_session()
    rows = s.query(SeoRedirect).order_by(SeoRedirect.created_at.desc(), SeoRedirect.id.desc()).all()
    return ok([r.to_dict() for r in rows])


@bp.post("/seo/redirects")
@require_permission("seo.manage")
def redirects_create():
    s = db_session()
    redirect = create_redirect(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(redirect.to_dict(), message="Redirect created", status=201)


@bp.put("/seo/redirects/<int:redirect_id>")
@require_permission("seo.manage")
def redirects_update(redirect_id: int):
    s = db_session()
    redirect = update_redirect(s, _get_redirect(s, redirect_id), request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(redirect.to_dict(), message="Redirect updated")


@bp.delete("/seo/redirects/<int:redirect_id>")
@require_permission("seo.manage")
def redirects_delete(redirect_id: int):
    s = db_session()
    delete_redirect(s, _get_redirect(s, redirect_id), login_required_user())
    s.commit()
    return ok({"id": redirect_id}, message="Redirect deleted")


@bp.get("/seo/analytics")
@require_permission("seo.manage")
def analytics_view():
    s = db_session()
    return ok(analytics(s, request.args))


@bp.post("/seo/sitemap/regenerate")
@require_permission("seo.manage")
def sitemap_regenerate():
    s = db_session()
    count = regenerate_sitemap(s, current_app.config["APP_URL"], login_required_user())
    s.commit()
    return ok({"entries": count}, message="Sitemap regenerated")
