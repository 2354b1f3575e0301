from __future__ import annotations

from flask import Blueprint, current_app, request

from app.edify.audit import record_event
from app.edify.db import db_session
from app.edify.errors import NotFound, raise_if_errors
from app.edify.modules.catalog.models import Book, Category
from app.edify.modules.catalog.service import (
    attach_book_file,
    book_payload,
    create_book,
    create_category,
    delete_book,
    update_book,
    update_category,
)
from app.edify.rbac import login_required_user, require_permission
from app.edify.storage import storage_from_config
from app.edify.utils import ok

bp = Blueprint("catalog_admin", __name__)


def _get_book(s, book_id: int) -> Book:
    book = s.get(Book, book_id)
    if not book:
        raise NotFound("Book not found")
    return book


# ---------- Books ----------
@bp.post("/books")
@require_permission("books.manage")
def books_create():
    s = db_session()
    book = create_book(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(book_payload(s, book), message="Book created", status=201)


@bp.put("/books/<int:book_id>")
@require_permission("books.manage")
def books_update(book_id: int):
    s = db_session()
    book = update_book(s, _get_book(s, book_id), request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(book_payload(s, book), message="Book updated")


@bp.delete("/books/<int:book_id>")
@require_permission("books.manage")
def books_delete(book_id: int):
    s = db_session()
    outcome = delete_book(s, _get_book(s, book_id), login_required_user())
    s.commit()
    return ok({"id": book_id, "outcome": outcome}, message=f"Book {outcome}")


@bp.post("/books/<int:book_id>/file")
@require_permission("books.manage")
def books_upload_file(book_id: int):
    s = db_session()
    book = _get_book(s, book_id)
    f = request.files.get("file")
    if not f or not f.filename:
        raise_if_errors(["File is required."])
    key = attach_book_file(s, storage_from_config(current_app.config), book, f, login_required_user())
    s.commit()
    return ok({"id": book.id, "book_file_key": key}, message="File uploaded", status=201)


# ---------- Categories ----------
@bp.get("/categories")
@require_permission("books.manage")
def categories_list():
    s = db_session()
    cats = s.query(Category).order_by(Category.kind.asc(), Category.name.asc()).all()
    return ok([c.to_dict() for c in cats])


@bp.post("/categories")
@require_permission("books.manage")
def categories_create():
    s = db_session()
    cat = create_category(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(cat.to_dict(), message="Category created", status=201)


@bp.put("/categories/<int:category_id>")
@require_permission("books.manage")
def categories_update(category_id: int):
    s = db_session()
    cat = s.get(Category, category_id)
    if not cat:
        raise NotFound("Category not found")
    update_category(s, cat, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(cat.to_dict(), message="Category updated")


@bp.delete("/categories/<int:category_id>")
@require_permission("books.manage")
def categories_delete(category_id: int):
    s = db_session()
    cat = s.get(Category, category_id)
    if not cat:
        raise NotFound("Category not found")
    record_event(s, actor=login_required_user(), action="category.delete", entity_type="Category", entity_id=str(cat.id), metadata={"name": cat.name})
    s.delete(cat)
    s.commit()
    return ok({"id": category_id}, message="Category deleted")
