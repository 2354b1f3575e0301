from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

from pypdf import PdfReader
from pypdf.errors import PdfReadError
from sqlalchemy import func, or_
from werkzeug.utils import secure_filename

from app.edify.audit import record_event
from app.edify.errors import Conflict, NotFound, raise_if_errors
from app.edify.modules.catalog.models import BOOK_STATUSES, CATEGORY_KINDS, Book, BookReview, Category
from app.edify.storage import book_file_key, guess_content_type
from app.edify.utils import clean_str, page_args, paginate, slugify, to_money, unique_slug, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from werkzeug.datastructures import FileStorage

    from app.edify.models import User
    from app.edify.storage import BookFileStore

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "created_at": Book.created_at,
    "updated_at": Book.updated_at,
    "title": Book.title,
    "author": Book.author,
    "price": Book.price,
    "category": Book.category_id,
}
ALLOWED_BOOK_EXTENSIONS = {".pdf", ".epub", ".mobi"}


# ---------- Books ----------
def validate_book_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate book create/update payload. Returns list of errors."""
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title too long.")
    if not partial or "author" in payload:
        if not clean_str(payload.get("author")):
            errors.append("Author is required.")
    if "price" in payload or not partial:
        try:
            price = to_money(payload.get("price", 0))
            if price < 0:
                errors.append("Price must be zero or positive.")
        except ValueError:
            errors.append("Price must be a number.")
    status = payload.get("status")
    if status is not None and status not in BOOK_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(BOOK_STATUSES)}")
    if "royalty_rate" in payload:
        try:
            rate = to_money(payload.get("royalty_rate"))
            if rate < 0 or rate > 100:
                errors.append("Royalty rate must be between 0 and 100.")
        except ValueError:
            errors.append("Royalty rate must be a number.")
    if "tags" in payload and not isinstance(payload.get("tags"), list):
        errors.append("Tags must be a list.")
    for key in ("stock", "page_count"):
        if payload.get(key) is not None:
            try:
                if int(payload[key]) < 0:
                    errors.append(f"{key} must be zero or positive.")
            except (TypeError, ValueError):
                errors.append(f"{key} must be an integer.")
    return errors


def rating_stats(s: "Session", book_ids: list[int]) -> dict[int, tuple[float, int]]:
    if not book_ids:
        return {}
    rows = (
        s.query(BookReview.book_id, func.avg(BookReview.rating), func.count(BookReview.id))
        .filter(BookReview.book_id.in_(book_ids), BookReview.is_published.is_(True))
        .group_by(BookReview.book_id)
        .all()
    )
    return {book_id: (round(float(avg or 0), 2), int(cnt)) for book_id, avg, cnt in rows}


def book_payload(s: "Session", book: Book) -> dict:
    avg, cnt = rating_stats(s, [book.id]).get(book.id, (0.0, 0))
    return book.to_dict(average_rating=avg, review_count=cnt)


def list_books(s: "Session", args, *, can_manage: bool) -> dict:
    page, limit = page_args(args)
    q = s.query(Book)

    status = (args.get("status") or "published").strip().lower()
    if status != "all" or not can_manage:
        if status not in BOOK_STATUSES or not can_manage:
            status = "published"
        q = q.filter(Book.status == status)

    category = clean_str(args.get("category"))
    if category:
        q = q.join(Category, Book.category_id == Category.id).filter(
            or_(Category.slug == category, func.lower(Category.name) == category.lower())
        )

    search = clean_str(args.get("search"))
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(
            or_(
                func.lower(Book.title).like(like),
                func.lower(Book.description).like(like),
                func.lower(Book.author).like(like),
            )
        )

    sort_col = SORT_COLUMNS.get(args.get("sort_by") or "created_at", Book.created_at)
    sort_order = (args.get("sort_order") or "desc").lower()
    q = q.order_by(sort_col.asc() if sort_order == "asc" else sort_col.desc(), Book.id.desc())

    books, pagination = paginate(q, page, limit)
    stats = rating_stats(s, [b.id for b in books])
    items = []
    for b in books:
        avg, cnt = stats.get(b.id, (0.0, 0))
        items.append(b.to_dict(average_rating=avg, review_count=cnt))
    return {"books": items, "pagination": pagination}


def get_visible_book(s: "Session", book: Book | None, *, can_manage: bool) -> Book:
    if book is None or (book.status != "published" and not can_manage):
        raise NotFound("Book not found")
    return book


def _apply_book_fields(s: "Session", book: Book, payload: dict) -> dict:
    changes: dict = {}

    def _set(attr: str, value) -> None:
        old = getattr(book, attr)
        if old != value:
            changes[attr] = {"old": str(old) if old is not None else None, "new": str(value) if value is not None else None}
            setattr(book, attr, value)

    for attr in ("title", "author", "description", "excerpt", "cover_image", "isbn", "language"):
        if attr in payload:
            _set(attr, clean_str(payload.get(attr)))
    if "price" in payload:
        _set("price", to_money(payload["price"]))
    if "royalty_rate" in payload:
        _set("royalty_rate", to_money(payload["royalty_rate"]))
    for attr in ("stock", "page_count"):
        if attr in payload:
            raw = payload.get(attr)
            _set(attr, int(raw) if raw is not None else None)
    if "is_available" in payload:
        _set("is_available", bool(payload["is_available"]))
    if "tags" in payload:
        book.tags = [str(t).strip() for t in payload.get("tags") or [] if str(t).strip()]
    if "author_user_id" in payload:
        _set("author_user_id", payload.get("author_user_id"))
    if "category_id" in payload:
        cid = payload.get("category_id")
        if cid is not None and s.get(Category, int(cid)) is None:
            raise NotFound("Category not found")
        _set("category_id", int(cid) if cid is not None else None)
    if "status" in payload and payload["status"]:
        _set("status", payload["status"])
        # published_at is set once and never moved by later edits
        if book.status == "published" and book.published_at is None:
            book.published_at = utcnow()
    return changes


def create_book(s: "Session", payload: dict, user: "User") -> Book:
    raise_if_errors(validate_book_payload(payload))
    now = utcnow()
    slug_source = clean_str(payload.get("slug")) or payload["title"]
    book = Book(
        title=clean_str(payload["title"]),
        author=clean_str(payload["author"]),
        slug=unique_slug(s, Book, slug_source),
        status="draft",
        tags=[],
        created_at=now,
        updated_at=now,
    )
    _apply_book_fields(s, book, {k: v for k, v in payload.items() if k not in ("title", "author", "slug")})
    s.add(book)
    s.flush()
    record_event(
        s,
        actor=user,
        action="book.create",
        entity_type="Book",
        entity_id=str(book.id),
        metadata={"title": book.title, "status": book.status},
    )
    return book


def update_book(s: "Session", book: Book, payload: dict, user: "User") -> Book:
    raise_if_errors(validate_book_payload(payload, partial=True))
    changes = _apply_book_fields(s, book, payload)
    if "slug" in payload and clean_str(payload.get("slug")):
        new_slug = slugify(payload["slug"])
        if new_slug != book.slug:
            book.slug = unique_slug(s, Book, new_slug, exclude_id=book.id)
            changes["slug"] = book.slug
    if changes:
        book.updated_at = utcnow()
        record_event(s, actor=user, action="book.update", entity_type="Book", entity_id=str(book.id), metadata={"changes": changes})
    return book


def delete_book(s: "Session", book: Book, user: "User") -> str:
    """Archive books that appear on orders; hard-delete the rest. Returns 'archived' or 'deleted'."""
    from app.edify.modules.orders.models import OrderItem

    has_orders = s.query(OrderItem.id).filter(OrderItem.book_id == book.id).first() is not None
    if has_orders:
        book.status = "archived"
        book.is_available = False
        book.updated_at = utcnow()
        outcome = "archived"
    else:
        s.delete(book)
        outcome = "deleted"
    record_event(s, actor=user, action=f"book.{outcome}", entity_type="Book", entity_id=str(book.id), metadata={"title": book.title})
    return outcome


def pdf_page_count(data: bytes) -> int | None:
    try:
        return len(PdfReader(io.BytesIO(data)).pages)
    except (PdfReadError, ValueError) as e:
        logger.warning("Could not read PDF page count: %s", e)
        return None


def attach_book_file(s: "Session", storage: "BookFileStore", book: Book, file: "FileStorage", user: "User") -> str:
    filename = secure_filename(file.filename or "")
    ext = ("." + filename.rsplit(".", 1)[-1].lower()) if "." in filename else ""
    if ext not in ALLOWED_BOOK_EXTENSIONS:
        raise_if_errors([f"Unsupported file type. Allowed: {', '.join(sorted(ALLOWED_BOOK_EXTENSIONS))}"])
    data = file.read()
    if not data:
        raise_if_errors(["File is empty."])
    key = book_file_key(book.id, filename, utcnow())
    storage.save(key, data, file.mimetype or guess_content_type(filename))
    previous_key, book.book_file_key = book.book_file_key, key
    if previous_key and previous_key != key:
        storage.remove(previous_key)
    if ext == ".pdf" and not book.page_count:
        book.page_count = pdf_page_count(data)
    book.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="book.file_upload",
        entity_type="Book",
        entity_id=str(book.id),
        metadata={"key": key, "size": len(data)},
    )
    logger.info("Stored book file book_id=%s key=%s bytes=%s", book.id, key, len(data))
    return key


def user_has_purchased(s: "Session", user: "User", book_id: int) -> bool:
    from app.edify.modules.orders.models import Order, OrderItem

    row = (
        s.query(Order.id)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .filter(Order.user_id == user.id, OrderItem.book_id == book_id, Order.payment_status == "completed")
        .first()
    )
    return row is not None


# ---------- Reviews ----------
def validate_review_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    rating = payload.get("rating")
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        errors.append("Rating must be an integer between 1 and 5.")
    comment = payload.get("comment")
    if comment is not None and len(str(comment)) > 2000:
        errors.append("Comment too long (max 2000 characters).")
    return errors


def create_book_review(s: "Session", book: Book, payload: dict, user: "User") -> BookReview:
    raise_if_errors(validate_review_payload(payload))
    existing = s.query(BookReview).filter(BookReview.book_id == book.id, BookReview.user_id == user.id).one_or_none()
    if existing:
        raise Conflict("You have already reviewed this book")
    now = utcnow()
    review = BookReview(
        book_id=book.id,
        user_id=user.id,
        rating=int(payload["rating"]),
        comment=clean_str(payload.get("comment")),
        is_verified_purchase=user_has_purchased(s, user, book.id),
        is_published=True,
        created_at=now,
        updated_at=now,
    )
    review.user = user
    s.add(review)
    s.flush()
    return review


def list_book_reviews(s: "Session", book: Book, args) -> dict:
    page, limit = page_args(args, default_limit=10, max_limit=50)
    q = (
        s.query(BookReview)
        .filter(BookReview.book_id == book.id, BookReview.is_published.is_(True))
        .order_by(BookReview.created_at.desc(), BookReview.id.desc())
    )
    reviews, pagination = paginate(q, page, limit)
    avg, cnt = rating_stats(s, [book.id]).get(book.id, (0.0, 0))
    return {
        "reviews": [r.to_dict() for r in reviews],
        "average_rating": avg,
        "review_count": cnt,
        "pagination": pagination,
    }


# ---------- Categories ----------
def validate_category_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "name" in payload:
        if not clean_str(payload.get("name")):
            errors.append("Name is required.")
    kind = payload.get("kind")
    if kind is not None and kind not in CATEGORY_KINDS:
        errors.append(f"Invalid kind. Must be one of: {', '.join(CATEGORY_KINDS)}")
    return errors


def create_category(s: "Session", payload: dict, user: "User") -> Category:
    raise_if_errors(validate_category_payload(payload))
    slug = slugify(clean_str(payload.get("slug")) or payload["name"])
    if s.query(Category.id).filter(Category.slug == slug).first():
        raise Conflict("A category with this slug already exists")
    cat = Category(
        name=clean_str(payload["name"]),
        slug=slug,
        description=clean_str(payload.get("description")),
        kind=payload.get("kind") or "book",
        is_active=bool(payload.get("is_active", True)),
    )
    s.add(cat)
    s.flush()
    record_event(s, actor=user, action="category.create", entity_type="Category", entity_id=str(cat.id), metadata={"name": cat.name})
    return cat


def update_category(s: "Session", cat: Category, payload: dict, user: "User") -> Category:
    raise_if_errors(validate_category_payload(payload, partial=True))
    if "name" in payload:
        cat.name = clean_str(payload["name"])
    if "slug" in payload and clean_str(payload.get("slug")):
        slug = slugify(payload["slug"])
        if s.query(Category.id).filter(Category.slug == slug, Category.id != cat.id).first():
            raise Conflict("A category with this slug already exists")
        cat.slug = slug
    if "description" in payload:
        cat.description = clean_str(payload.get("description"))
    if "kind" in payload:
        cat.kind = payload["kind"]
    if "is_active" in payload:
        cat.is_active = bool(payload["is_active"])
    record_event(s, actor=user, action="category.update", entity_type="Category", entity_id=str(cat.id))
    return cat
