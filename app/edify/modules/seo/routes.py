from __future__ import annotations

from flask import Blueprint, Response, current_app, request

from app.edify.db import db_session
from app.edify.errors import ApiError, NotFound
from app.edify.modules.seo.config import generate_meta_tags
from app.edify.modules.seo.service import (
    get_page_seo,
    list_sitemap_entries,
    page_data,
    resolve_redirect,
    robots_txt,
    sitemap_xml,
    track_page_view,
)
from app.edify.rbac import current_user
from app.edify.utils import clean_str, ok

bp = Blueprint("seo", __name__)
# robots.txt and sitemap.xml are served from the site root.
root_bp = Blueprint("seo_root", __name__)

# Tracking beacons are fired anonymously by browsers.
CSRF_EXEMPT_ENDPOINTS = frozenset({"seo.seo_track"})


@bp.get("/seo")
def seo_page():
    s = db_session()
    page_type = clean_str(request.args.get("page_type"))
    if not page_type:
        raise ApiError("page_type is required")
    slug = clean_str(request.args.get("slug"))
    seo = get_page_seo(s, page_type, slug, page_data(s, page_type, slug))
    if seo is None:
        raise NotFound("SEO settings not found")
    base_url = current_app.config["APP_URL"]
    return ok({"seo": seo, "meta": generate_meta_tags(seo, base_url)})


@bp.get("/seo/redirect")
def seo_redirect():
    s = db_session()
    from_url = clean_str(request.args.get("from"))
    if not from_url:
        raise ApiError("Missing from URL parameter")
    redirect = resolve_redirect(s, from_url)
    s.commit()
    if redirect is None:
        return ok({"to_url": None})
    return ok({"to_url": redirect.to_url, "status_code": redirect.status_code})


@bp.post("/seo/analytics/track")
def seo_track():
    s = db_session()
    user = current_user()
    view = track_page_view(
        s,
        request.get_json(silent=True) or {},
        user_agent=request.headers.get("User-Agent"),
        ip_address=request.headers.get("X-Forwarded-For", request.remote_addr or "").split(",")[0].strip() or None,
        user_id=user.id if user else None,
    )
    s.commit()
    return ok({"id": view.id}, status=201)


@root_bp.get("/robots.txt")
def robots():
    return Response(robots_txt(current_app.config["APP_URL"]), mimetype="text/plain")


@root_bp.get("/sitemap.xml")
def sitemap():
    s = db_session()
    return Response(sitemap_xml(list_sitemap_entries(s)), mimetype="application/xml")
