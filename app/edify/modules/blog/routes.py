from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.modules.blog.service import add_comment, comment_counts, get_published_post, list_comments, list_posts
from app.edify.rbac import current_user, login_required_user, require_login, user_has_permission
from app.edify.utils import ok

bp = Blueprint("blog", __name__)


def _can_manage() -> bool:
    return user_has_permission(current_user(), "blog.manage")


@bp.get("/blog")
def blog_list():
    s = db_session()
    return ok(list_posts(s, request.args, can_manage=_can_manage()))


@bp.get("/blog/<slug>")
def blog_detail(slug: str):
    s = db_session()
    post = get_published_post(s, slug, can_manage=_can_manage())
    return ok(post.to_dict(comment_count=comment_counts(s, [post.id]).get(post.id, 0)))


@bp.get("/blog/<slug>/comments")
def blog_comments_list(slug: str):
    s = db_session()
    post = get_published_post(s, slug)
    return ok({"comments": [c.to_dict() for c in list_comments(s, post)]})


@bp.post("/blog/<slug>/comments")
@require_login
def blog_comments_create(slug: str):
    s = db_session()
    post = get_published_post(s, slug)
    comment = add_comment(s, post, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(comment.to_dict(), message="Comment posted", status=201)
