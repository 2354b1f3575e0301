from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from app.edify.audit import record_event
from app.edify.errors import Conflict, NotFound, ValidationFailed, raise_if_errors
from app.edify.modules.seo.config import (
    DEFAULT_SEO,
    PAGE_TYPES,
    ROBOTS_ALLOW,
    ROBOTS_DISALLOW,
    STATIC_PAGES,
    interpolate,
)
from app.edify.modules.seo.models import (
    CHANGE_FREQUENCIES,
    OG_TYPES,
    REDIRECT_STATUS_CODES,
    TWITTER_CARDS,
    SeoPageView,
    SeoRedirect,
    SeoSetting,
    SitemapEntry,
)
from app.edify.utils import clean_str, parse_datetime, parse_int_arg, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

logger = logging.getLogger(__name__)

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
_INTERPOLATED = ("title", "description", "og_title", "og_description")


# ---------- Page SEO ----------
def _find_setting(s: "Session", page_type: str, slug: str | None) -> SeoSetting | None:
    q = s.query(SeoSetting).filter(SeoSetting.page_type == page_type, SeoSetting.is_active.is_(True))
    if slug is None:
        q = q.filter(SeoSetting.page_slug.is_(None))
    else:
        q = q.filter(SeoSetting.page_slug == slug)
    return q.first()


def get_page_seo(s: "Session", page_type: str, slug: str | None = None, data: dict | None = None) -> dict | None:
    """
    Resolve SEO for a page: (type, slug) setting, then (type, no slug) setting,
    then the built-in defaults. Returns None for unknown page types with no setting.
    """
    setting = _find_setting(s, page_type, slug) if slug else None
    if setting is None:
        setting = _find_setting(s, page_type, None)
    if setting is not None:
        seo = setting.to_dict()
        for key in ("id", "page_type", "page_slug", "is_active", "updated_at"):
            seo.pop(key, None)
        seo["source"] = "setting"
    elif page_type in DEFAULT_SEO:
        seo = {**DEFAULT_SEO[page_type], "keywords": list(DEFAULT_SEO[page_type]["keywords"]), "source": "default"}
    else:
        return None

    for key in _INTERPOLATED:
        seo[key] = interpolate(seo.get(key), data)
    seo["keywords"] = [interpolate(k, data) for k in seo.get("keywords") or []]
    return seo


def page_data(s: "Session", page_type: str, slug: str | None) -> dict | None:
    """Placeholder data for detail pages, keyed the way the default templates expect."""
    if not slug:
        return None
    from app.edify.modules.blog.models import BlogPost
    from app.edify.modules.catalog.models import Book
    from app.edify.modules.courses.models import Course

    if page_type == "book-detail":
        book = s.query(Book).filter(Book.slug == slug, Book.status == "published").one_or_none()
        if book:
            return {
                "book": {
                    "title": book.title,
                    "description": book.description,
                    "author": book.author,
                    "category": book.category.name if book.category else None,
                }
            }
    elif page_type == "blog-post":
        post = s.query(BlogPost).filter(BlogPost.slug == slug, BlogPost.status == "published").one_or_none()
        if post:
            return {"post": {"title": post.title, "excerpt": post.excerpt, "tags": list(post.tags or [])}}
    elif page_type == "course":
        course = s.query(Course).filter(Course.slug == slug, Course.is_published.is_(True)).one_or_none()
        if course:
            return {"course": {"title": course.title, "description": course.description, "category": course.category}}
    return None


def _to_priority(value: Any) -> Decimal | None:
    try:
        p = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if p < 0 or p > 1:
        return None
    return p.quantize(Decimal("0.1"))


def validate_setting_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    page_type = clean_str(payload.get("page_type"))
    if not page_type:
        errors.append("page_type is required.")
    elif page_type not in PAGE_TYPES:
        errors.append(f"Invalid page_type. Must be one of: {', '.join(PAGE_TYPES)}")
    title = clean_str(payload.get("title"))
    if not title:
        errors.append("Title is required.")
    elif len(title) > 255:
        errors.append("Title too long.")
    if not clean_str(payload.get("description")):
        errors.append("Description is required.")
    keywords = payload.get("keywords")
    if keywords is not None:
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            errors.append("Keywords must be a list of strings.")
        elif len(keywords) > 10:
            errors.append("Maximum 10 keywords allowed.")
    if payload.get("og_type") is not None and payload["og_type"] not in OG_TYPES:
        errors.append(f"og_type must be one of: {', '.join(OG_TYPES)}")
    if payload.get("twitter_card") is not None and payload["twitter_card"] not in TWITTER_CARDS:
        errors.append(f"twitter_card must be one of: {', '.join(TWITTER_CARDS)}")
    if payload.get("change_freq") is not None and payload["change_freq"] not in CHANGE_FREQUENCIES:
        errors.append(f"change_freq must be one of: {', '.join(CHANGE_FREQUENCIES)}")
    if payload.get("priority") is not None and _to_priority(payload["priority"]) is None:
        errors.append("Priority must be between 0 and 1.")
    sd = payload.get("structured_data")
    if sd is not None and not isinstance(sd, dict):
        errors.append("structured_data must be an object.")
    return errors


def upsert_setting(s: "Session", payload: dict, user: "User") -> tuple[SeoSetting, bool]:
    """Returns (setting, created)."""
    raise_if_errors(validate_setting_payload(payload))
    page_type = clean_str(payload["page_type"])
    slug = clean_str(payload.get("page_slug"))
    setting = (
        s.query(SeoSetting)
        .filter(
            SeoSetting.page_type == page_type,
            SeoSetting.page_slug == slug if slug else SeoSetting.page_slug.is_(None),
        )
        .one_or_none()
    )
    created = setting is None
    now = utcnow()
    if created:
        setting = SeoSetting(page_type=page_type, page_slug=slug, created_at=now)
        s.add(setting)

    setting.title = clean_str(payload["title"])
    setting.description = clean_str(payload["description"])
    setting.keywords = [k.strip() for k in payload.get("keywords") or [] if k.strip()]
    for attr in ("canonical_url", "og_title", "og_description", "og_image", "twitter_site", "twitter_creator"):
        setattr(setting, attr, clean_str(payload.get(attr)))
    setting.og_type = payload.get("og_type") or "website"
    setting.twitter_card = payload.get("twitter_card") or "summary_large_image"
    setting.robots_index = bool(payload.get("robots_index", True))
    setting.robots_follow = bool(payload.get("robots_follow", True))
    setting.structured_data = payload.get("structured_data")
    setting.priority = _to_priority(payload["priority"]) if payload.get("priority") is not None else Decimal("0.5")
    setting.change_freq = payload.get("change_freq") or "monthly"
    setting.is_active = bool(payload.get("is_active", True))
    setting.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="seo.setting_create" if created else "seo.setting_update",
        entity_type="SeoSetting",
        entity_id=str(setting.id),
        metadata={"page_type": page_type, "page_slug": slug},
    )
    return setting, created


def list_settings(s: "Session", page_type: str | None = None) -> list[SeoSetting]:
    q = s.query(SeoSetting)
    if page_type:
        q = q.filter(SeoSetting.page_type == page_type)
    return q.order_by(SeoSetting.page_type.asc(), SeoSetting.page_slug.asc()).all()


def delete_setting(s: "Session", setting_id: int, user: "User") -> None:
    setting = s.get(SeoSetting, setting_id)
    if setting is None:
        raise NotFound("SEO setting not found")
    record_event(s, actor=user, action="seo.setting_delete", entity_type="SeoSetting", entity_id=str(setting_id))
    s.delete(setting)


# ---------- Redirects ----------
def resolve_redirect(s: "Session", from_url: str) -> SeoRedirect | None:
    redirect = (
        s.query(SeoRedirect)
        .filter(SeoRedirect.from_url == from_url, SeoRedirect.is_active.is_(True))
        .one_or_none()
    )
    if redirect is None:
        return None
    s.execute(
        update(SeoRedirect)
        .where(SeoRedirect.id == redirect.id)
        .values(hit_count=SeoRedirect.hit_count + 1)
        .execution_options(synchronize_session=False)
    )
    s.refresh(redirect)
    return redirect


def validate_redirect_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    from_url = clean_str(payload.get("from_url"))
    to_url = clean_str(payload.get("to_url"))
    if not partial or "from_url" in payload:
        if not from_url:
            errors.append("from_url is required.")
    if not partial or "to_url" in payload:
        if not to_url:
            errors.append("to_url is required.")
    if from_url and to_url and from_url == to_url:
        errors.append("from_url and to_url cannot be the same.")
    status_code = payload.get("status_code")
    if status_code is not None:
        try:
            if int(status_code) not in REDIRECT_STATUS_CODES:
                errors.append("status_code must be 301 or 302.")
        except (TypeError, ValueError):
            errors.append("status_code must be 301 or 302.")
    return errors


def _flush_redirect(s: "Session") -> None:
    try:
        with s.begin_nested():
            s.flush()
    except IntegrityError as e:
        raise Conflict("A redirect for this URL already exists") from e


def create_redirect(s: "Session", payload: dict, user: "User") -> SeoRedirect:
    raise_if_errors(validate_redirect_payload(payload))
    from_url = clean_str(payload["from_url"])
    if s.query(SeoRedirect.id).filter(SeoRedirect.from_url == from_url).first():
        raise Conflict("A redirect for this URL already exists")
    now = utcnow()
    redirect = SeoRedirect(
        from_url=from_url,
        to_url=clean_str(payload["to_url"]),
        status_code=int(payload.get("status_code") or 301),
        hit_count=0,
        is_active=bool(payload.get("is_active", True)),
        created_at=now,
        updated_at=now,
    )
    s.add(redirect)
    _flush_redirect(s)
    record_event(s, actor=user, action="seo.redirect_create", entity_type="SeoRedirect", entity_id=str(redirect.id), metadata={"from": from_url})
    return redirect


def update_redirect(s: "Session", redirect: SeoRedirect, payload: dict, user: "User") -> SeoRedirect:
    merged = {"from_url": redirect.from_url, "to_url": redirect.to_url, **payload}
    raise_if_errors(validate_redirect_payload(merged))
    redirect.from_url = clean_str(merged["from_url"])
    redirect.to_url = clean_str(merged["to_url"])
    if payload.get("status_code") is not None:
        redirect.status_code = int(payload["status_code"])
    if "is_active" in payload:
        redirect.is_active = bool(payload["is_active"])
    redirect.updated_at = utcnow()
    _flush_redirect(s)
    record_event(s, actor=user, action="seo.redirect_update", entity_type="SeoRedirect", entity_id=str(redirect.id))
    return redirect


def delete_redirect(s: "Session", redirect: SeoRedirect, user: "User") -> None:
    record_event(s, actor=user, action="seo.redirect_delete", entity_type="SeoRedirect", entity_id=str(redirect.id), metadata={"from": redirect.from_url})
    s.delete(redirect)


# ---------- Analytics ----------
def device_type_from_user_agent(user_agent: str | None) -> str:
    ua = (user_agent or "").lower()
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobi" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"


def _bounded_int(value: Any, *, maximum: int | None = None) -> int:
    return parse_int_arg(None if value is None else str(value), 0, minimum=0, maximum=maximum)


def track_page_view(
    s: "Session",
    payload: dict,
    *,
    user_agent: str | None,
    ip_address: str | None,
    user_id: int | None,
) -> SeoPageView:
    page_url = clean_str(payload.get("page_url"))
    if not page_url:
        raise ValidationFailed(["page_url is required."])
    if len(page_url) > 1024:
        raise ValidationFailed(["page_url too long."])
    view = SeoPageView(
        page_url=page_url,
        page_title=(clean_str(payload.get("page_title")) or None),
        referrer=clean_str(payload.get("referrer")),
        user_agent=user_agent,
        ip_address=ip_address,
        session_id=clean_str(payload.get("session_id")),
        user_id=user_id,
        device_type=clean_str(payload.get("device_type")) or device_type_from_user_agent(user_agent),
        time_on_page=_bounded_int(payload.get("time_on_page")),
        scroll_depth=_bounded_int(payload.get("scroll_depth"), maximum=100),
        created_at=utcnow(),
    )
    for key in ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"):
        setattr(view, key, clean_str(payload.get(key)))
    s.add(view)
    s.flush()
    return view


def analytics(s: "Session", args) -> dict:
    limit = parse_int_arg(args.get("limit"), 100, minimum=1, maximum=1000)
    q = s.query(SeoPageView)
    page_url = clean_str(args.get("page_url"))
    if page_url:
        q = q.filter(SeoPageView.page_url == page_url)
    try:
        start = parse_datetime(args.get("start_date"))
        end = parse_datetime(args.get("end_date"))
    except ValueError as e:
        raise ValidationFailed(["start_date and end_date must be ISO dates."]) from e
    if start is not None:
        q = q.filter(SeoPageView.created_at >= start)
    if end is not None:
        if len(str(args.get("end_date"))) == 10:
            end = end + timedelta(days=1)  # whole day for date-only input
        q = q.filter(SeoPageView.created_at < end)
    total = q.order_by(None).count()
    views = q.order_by(SeoPageView.created_at.desc(), SeoPageView.id.desc()).limit(limit).all()
    return {"views": [v.to_dict() for v in views], "total": total, "popular_pages": popular_pages(s)}


def popular_pages(s: "Session", limit: int = 10) -> list[dict]:
    views = func.count(SeoPageView.id).label("views")
    rows = (
        s.query(SeoPageView.page_url, func.max(SeoPageView.page_title), views)
        .group_by(SeoPageView.page_url)
        .order_by(views.desc(), SeoPageView.page_url.asc())
        .limit(limit)
        .all()
    )
    return [{"page_url": url, "page_title": title, "views": int(cnt)} for url, title, cnt in rows]


# ---------- Sitemap / robots ----------
def regenerate_sitemap(s: "Session", base_url: str, user: "User | None" = None) -> int:
    from app.edify.modules.blog.models import BlogPost
    from app.edify.modules.catalog.models import Book
    from app.edify.modules.courses.models import Course

    base_url = base_url.rstrip("/")
    now = utcnow()
    entries: list[SitemapEntry] = [
        SitemapEntry(url=f"{base_url}{path}", lastmod=now, changefreq=freq, priority=Decimal(str(prio)), page_type="static")
        for path, prio, freq in STATIC_PAGES
    ]
    for slug, updated in s.query(Book.slug, Book.updated_at).filter(Book.status == "published").order_by(Book.id):
        entries.append(SitemapEntry(url=f"{base_url}/books/{slug}", lastmod=updated, changefreq="weekly", priority=Decimal("0.8"), page_type="book"))
    for slug, updated in s.query(BlogPost.slug, BlogPost.updated_at).filter(BlogPost.status == "published").order_by(BlogPost.id):
        entries.append(SitemapEntry(url=f"{base_url}/blog/{slug}", lastmod=updated, changefreq="weekly", priority=Decimal("0.7"), page_type="blog-post"))
    for slug, updated in s.query(Course.slug, Course.updated_at).filter(Course.is_published.is_(True)).order_by(Course.id):
        entries.append(
            SitemapEntry(url=f"{base_url}/academy/courses/{slug}", lastmod=updated, changefreq="weekly", priority=Decimal("0.7"), page_type="course")
        )

    s.query(SitemapEntry).delete(synchronize_session=False)
    for e in entries:
        e.is_active = True
        s.add(e)
    s.flush()
    record_event(s, actor=user, action="seo.sitemap_regenerate", entity_type="Sitemap", entity_id="sitemap", metadata={"entries": len(entries)})
    logger.info("Sitemap regenerated entries=%s", len(entries))
    return len(entries)


def list_sitemap_entries(s: "Session") -> list[SitemapEntry]:
    return (
        s.query(SitemapEntry)
        .filter(SitemapEntry.is_active.is_(True))
        .order_by(SitemapEntry.priority.desc(), SitemapEntry.id.asc())
        .all()
    )


def sitemap_xml(entries: list[SitemapEntry]) -> bytes:
    urlset = ET.Element("urlset", xmlns=SITEMAP_NS)
    for e in entries:
        url = ET.SubElement(urlset, "url")
        ET.SubElement(url, "loc").text = e.url
        ET.SubElement(url, "lastmod").text = e.lastmod.strftime("%Y-%m-%dT%H:%M:%SZ")
        ET.SubElement(url, "changefreq").text = e.changefreq
        ET.SubElement(url, "priority").text = str(e.priority)
    return ET.tostring(urlset, encoding="utf-8", xml_declaration=True)


def robots_txt(base_url: str) -> str:
    base_url = base_url.rstrip("/")
    lines = ["User-agent: *", "Allow: /", "", f"Sitemap: {base_url}/sitemap.xml", "", "Crawl-delay: 1", ""]
    lines += [f"Disallow: {p}" for p in ROBOTS_DISALLOW]
    lines.append("")
    lines += [f"Allow: {p}" for p in ROBOTS_ALLOW]
    return "\n".join(lines) + "\n"

