from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, or_

from app.edify.audit import record_event
from app.edify.errors import NotFound, ValidationFailed, raise_if_errors
from app.edify.modules.blog.models import POST_STATUSES, BlogComment, BlogPost
from app.edify.modules.catalog.models import Category
from app.edify.modules.newsletter.service import html_to_text
from app.edify.utils import clean_str, page_args, paginate, slugify, unique_slug, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 160
MAX_COMMENT_LENGTH = 2000


def derive_excerpt(content: str, length: int = EXCERPT_LENGTH) -> str:
    text = " ".join(html_to_text(content).split())
    if len(text) <= length:
        return text
    return text[:length].rstrip()


def validate_post_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title too long.")
    if not partial or "content" in payload:
        if not clean_str(payload.get("content")):
            errors.append("Content is required.")
    status = payload.get("status")
    if status is not None and status not in POST_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(POST_STATUSES)}")
    tags = payload.get("tags")
    if tags is not None and (not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)):
        errors.append("Tags must be a list of strings.")
    return errors


def comment_counts(s: "Session", post_ids: list[int]) -> dict[int, int]:
    if not post_ids:
        return {}
    rows = (
        s.query(BlogComment.post_id, func.count(BlogComment.id))
        .filter(BlogComment.post_id.in_(post_ids), BlogComment.is_approved.is_(True))
        .group_by(BlogComment.post_id)
        .all()
    )
    return {pid: int(cnt) for pid, cnt in rows}


def list_posts(s: "Session", args, *, can_manage: bool = False) -> dict:
    page, limit = page_args(args, default_limit=10, max_limit=50)
    q = s.query(BlogPost)
    status = (args.get("status") or "published").strip().lower()
    if not can_manage or status not in POST_STATUSES + ("all",):
        status = "published"
    if status != "all":
        q = q.filter(BlogPost.status == status)

    category = clean_str(args.get("category"))
    if category:
        q = q.join(Category, BlogPost.category_id == Category.id).filter(
            or_(Category.slug == category, func.lower(Category.name) == category.lower())
        )
    search = clean_str(args.get("search"))
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(func.lower(BlogPost.title).like(like), func.lower(BlogPost.content).like(like)))

    tag = clean_str(args.get("tag"))
    q = q.order_by(BlogPost.published_at.desc(), BlogPost.id.desc())
    if tag:
        # JSON containment differs per backend; filter tags in Python.
        tag = tag.lower()
        matching = [p for p in q.all() if tag in [t.lower() for t in (p.tags or [])]]
        total = len(matching)
        posts = matching[(page - 1) * limit : page * limit]
        pagination = {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)}
    else:
        posts, pagination = paginate(q, page, limit)

    counts = comment_counts(s, [p.id for p in posts])
    return {
        "posts": [p.to_dict(include_content=False, comment_count=counts.get(p.id, 0)) for p in posts],
        "pagination": pagination,
    }


def get_published_post(s: "Session", slug: str, *, can_manage: bool = False) -> BlogPost:
    post = s.query(BlogPost).filter(BlogPost.slug == slug).one_or_none()
    if post is None or (post.status != "published" and not can_manage):
        raise NotFound("Blog post not found")
    return post


def _resolve_category(s: "Session", value) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        cat = s.get(Category, value)
    else:
        cat = s.query(Category).filter(Category.slug == str(value)).one_or_none()
    if cat is None:
        raise ValidationFailed(["Category not found."])
    return cat.id


def _apply_post_fields(s: "Session", post: BlogPost, payload: dict) -> None:
    for attr in ("title", "cover_image", "seo_title", "seo_description"):
        if attr in payload:
            setattr(post, attr, clean_str(payload.get(attr)))
    if "content" in payload:
        post.content = payload["content"]
    if "excerpt" in payload:
        post.excerpt = clean_str(payload.get("excerpt"))
    if not post.excerpt and post.content:
        post.excerpt = derive_excerpt(post.content)
    if "tags" in payload:
        post.tags = [t.strip() for t in (payload.get("tags") or []) if t.strip()]
    if "category_id" in payload or "category" in payload:
        post.category_id = _resolve_category(s, payload.get("category_id", payload.get("category")))
    if payload.get("status"):
        post.status = payload["status"]
        if post.status == "published" and post.published_at is None:
            post.published_at = utcnow()


def create_post(s: "Session", payload: dict, user: "User") -> BlogPost:
    raise_if_errors(validate_post_payload(payload))
    now = utcnow()
    post = BlogPost(
        title=clean_str(payload["title"]),
        slug=unique_slug(s, BlogPost, clean_str(payload.get("slug")) or payload["title"]),
        content=payload["content"],
        status="draft",
        tags=[],
        author_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _apply_post_fields(s, post, {k: v for k, v in payload.items() if k not in ("title", "slug")})
    s.add(post)
    s.flush()
    record_event(s, actor=user, action="blog.create", entity_type="BlogPost", entity_id=str(post.id), metadata={"status": post.status})
    return post


def update_post(s: "Session", post: BlogPost, payload: dict, user: "User") -> BlogPost:
    raise_if_errors(validate_post_payload(payload, partial=True))
    old_status = post.status
    _apply_post_fields(s, post, payload)
    if clean_str(payload.get("slug")):
        new_slug = slugify(payload["slug"])
        if new_slug != post.slug:
            post.slug = unique_slug(s, BlogPost, new_slug, exclude_id=post.id)
    post.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="blog.update",
        entity_type="BlogPost",
        entity_id=str(post.id),
        metadata={"status": {"old": old_status, "new": post.status}},
    )
    return post


def delete_post(s: "Session", post: BlogPost, user: "User") -> None:
    record_event(s, actor=user, action="blog.delete", entity_type="BlogPost", entity_id=str(post.id), metadata={"slug": post.slug})
    s.delete(post)


# ---------- Comments ----------
def list_comments(s: "Session", post: BlogPost) -> list[BlogComment]:
    return (
        s.query(BlogComment)
        .filter(BlogComment.post_id == post.id, BlogComment.is_approved.is_(True))
        .order_by(BlogComment.created_at.asc(), BlogComment.id.asc())
        .all()
    )


def add_comment(s: "Session", post: BlogPost, payload: dict, user: "User") -> BlogComment:
    content = clean_str(payload.get("content"))
    if not content:
        raise ValidationFailed(["Comment content is required."])
    if len(content) > MAX_COMMENT_LENGTH:
        raise ValidationFailed([f"Comment too long (max {MAX_COMMENT_LENGTH} characters)."])
    comment = BlogComment(
        post_id=post.id,
        user_id=user.id,
        author_name=user.display_name,
        content=content,
        is_approved=True,
        created_at=utcnow(),
    )
    s.add(comment)
    s.flush()
    return comment
