from __future__ import annotations

from flask import Blueprint, current_app, request, send_file

from app.edify.db import db_session
from app.edify.errors import Forbidden, NotFound
from app.edify.modules.catalog.models import Book, Category
from app.edify.modules.catalog.service import (
    book_payload,
    create_book_review,
    get_visible_book,
    list_book_reviews,
    list_books,
    user_has_purchased,
)
from app.edify.rbac import current_user, login_required_user, user_has_permission
from app.edify.storage import StorageError, download_name, guess_content_type, storage_from_config
from app.edify.utils import ok

bp = Blueprint("catalog", __name__)


def _can_manage() -> bool:
    return user_has_permission(current_user(), "books.manage")


@bp.get("/books")
def books_list():
    s = db_session()
    return ok(list_books(s, request.args, can_manage=_can_manage()))


@bp.get("/books/<int:book_id>")
def books_detail(book_id: int):
    s = db_session()
    book = get_visible_book(s, s.get(Book, book_id), can_manage=_can_manage())
    return ok(book_payload(s, book))


@bp.get("/books/slug/<slug>")
def books_by_slug(slug: str):
    s = db_session()
    book = s.query(Book).filter(Book.slug == slug).one_or_none()
    book = get_visible_book(s, book, can_manage=_can_manage())
    return ok(book_payload(s, book))


@bp.get("/books/<int:book_id>/download")
def books_download(book_id: int):
    s = db_session()
    user = login_required_user()
    can_manage = _can_manage()
    book = get_visible_book(s, s.get(Book, book_id), can_manage=can_manage)
    if not book.book_file_key:
        raise NotFound("Book file not available")
    if not can_manage and not user_has_purchased(s, user, book.id):
        raise Forbidden("Book not purchased. Please purchase the book to download.")

    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.load(book.book_file_key)
    except StorageError as e:
        current_app.logger.error("Book file missing book_id=%s key=%s: %s", book.id, book.book_file_key, e)
        raise NotFound("Book file not available") from e
    filename = download_name(book.book_file_key)
    return send_file(fobj, mimetype=guess_content_type(filename), as_attachment=True, download_name=filename)


@bp.get("/books/<int:book_id>/reviews")
def book_reviews_list(book_id: int):
    s = db_session()
    book = get_visible_book(s, s.get(Book, book_id), can_manage=_can_manage())
    return ok(list_book_reviews(s, book, request.args))


@bp.post("/books/<int:book_id>/reviews")
def book_reviews_create(book_id: int):
    s = db_session()
    user = login_required_user()
    book = get_visible_book(s, s.get(Book, book_id), can_manage=_can_manage())
    review = create_book_review(s, book, request.get_json(silent=True) or {}, user)
    s.commit()
    return ok(review.to_dict(), message="Review submitted", status=201)


@bp.get("/categories")
def categories_list():
    s = db_session()
    q = s.query(Category).filter(Category.is_active.is_(True))
    kind = (request.args.get("kind") or "").strip()
    if kind:
        q = q.filter(Category.kind == kind)
    return ok([c.to_dict() for c in q.order_by(Category.name.asc()).all()])
