from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.errors import NotFound
from app.edify.modules.blog.models import BlogPost
from app.edify.modules.blog.service import create_post, delete_post, list_posts, update_post
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import ok

bp = Blueprint("blog_admin", __name__)


def _get_post(s, post_id: int) -> BlogPost:
    post = s.get(BlogPost, post_id)
    if not post:
        raise NotFound("Blog post not found")
    return post


@bp.get("/blog")
@require_permission("blog.manage")
def posts_list():
    s = db_session()
    args = request.args.to_dict()
    args.setdefault("status", "all")
    return ok(list_posts(s, args, can_manage=True))


@bp.post("/blog")
@require_permission("blog.manage")
def posts_create():
    s = db_session()
    post = create_post(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(post.to_dict(), message="Blog post created", status=201)


@bp.put("/blog/<int:post_id>")
@require_permission("blog.manage")
def posts_update(post_id: int):
    s = db_session()
    post = update_post(s, _get_post(s, post_id), request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(post.to_dict(), message="Blog post updated")


@bp.delete("/blog/<int:post_id>")
@require_permission("blog.manage")
def posts_delete(post_id: int):
    s = db_session()
    delete_post(s, _get_post(s, post_id), login_required_user())
    s.commit()
    return ok({"id": post_id}, message="Blog post deleted")
