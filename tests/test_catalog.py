"""Tests for books, categories, book files and book reviews."""

import io

from app.edify.db import session_scope
from app.edify.modules.catalog.models import Book


def test_admin_creates_draft_book_with_unique_slug(admin_client):
    r = admin_client.post("/admin/books", json={"title": "River Songs", "author": "Ngozi Eze", "price": "1500"})
    assert r.status_code == 201
    first = r.json["data"]
    assert first["status"] == "draft"
    assert first["slug"] == "river-songs"
    assert first["price"] == "1500.00"
    assert first["royalty_rate"] == "70.00"

    r = admin_client.post("/admin/books", json={"title": "River Songs", "author": "Someone Else"})
    assert r.json["data"]["slug"] == "river-songs-2"


def test_book_validation_errors(admin_client):
    r = admin_client.post("/admin/books", json={"title": "", "author": "", "price": "-3", "royalty_rate": 140})
    assert r.status_code == 400
    details = r.json["details"]
    assert "Title is required." in details
    assert "Author is required." in details
    assert "Price must be zero or positive." in details
    assert "Royalty rate must be between 0 and 100." in details


def test_catalog_requires_books_manage(reader_client):
    r = reader_client.post("/admin/books", json={"title": "X", "author": "Y"})
    assert r.status_code == 403


def test_public_listing_hides_drafts(client, admin_client, make_book):
    make_book(title="Published One")
    make_book(title="Hidden Draft", status="draft")

    r = client.get("/api/books")
    titles = [b["title"] for b in r.json["data"]["books"]]
    assert titles == ["Published One"]
    assert r.json["data"]["pagination"]["total"] == 1

    # Anonymous callers cannot widen the status filter.
    r = client.get("/api/books?status=all")
    assert [b["title"] for b in r.json["data"]["books"]] == ["Published One"]

    r = admin_client.get("/api/books?status=all")
    assert r.json["data"]["pagination"]["total"] == 2


def test_listing_search_sort_and_category(client, admin_client, make_book):
    r = admin_client.post("/admin/categories", json={"name": "Poetry"})
    assert r.status_code == 201
    cat_id = r.json["data"]["id"]

    make_book(title="Alpha Verses", price="300.00", category_id=cat_id)
    make_book(title="Beta Stories", price="100.00", description="short fiction")
    make_book(title="Gamma Verses", price="200.00", category_id=cat_id)

    r = client.get("/api/books?search=verses&sort_by=price&sort_order=asc")
    assert [b["title"] for b in r.json["data"]["books"]] == ["Gamma Verses", "Alpha Verses"]

    r = client.get("/api/books?search=FICTION")
    assert [b["title"] for b in r.json["data"]["books"]] == ["Beta Stories"]

    r = client.get("/api/books?category=poetry")
    assert {b["category"] for b in r.json["data"]["books"]} == {"Poetry"}
    assert r.json["data"]["pagination"]["total"] == 2


def test_book_detail_and_slug_lookup(client, admin_client, make_book):
    book_id = make_book(title="Open Fields")
    draft_id = make_book(title="Not Yet", status="draft")

    r = client.get(f"/api/books/{book_id}")
    assert r.status_code == 200
    assert r.json["data"]["average_rating"] == 0.0
    assert r.json["data"]["review_count"] == 0

    assert client.get("/api/books/slug/open-fields").json["data"]["id"] == book_id
    assert client.get(f"/api/books/{draft_id}").status_code == 404
    assert client.get("/api/books/slug/not-yet").status_code == 404
    assert admin_client.get(f"/api/books/{draft_id}").status_code == 200


def test_update_book_publishes_once(admin_client):
    book_id = admin_client.post("/admin/books", json={"title": "Late Bloom", "author": "A"}).json["data"]["id"]
    r = admin_client.put(f"/admin/books/{book_id}", json={"status": "published", "tags": ["poetry", " ", "nature"]})
    assert r.status_code == 200
    published_at = r.json["data"]["published_at"]
    assert published_at is not None
    assert r.json["data"]["tags"] == ["poetry", "nature"]

    r = admin_client.put(f"/admin/books/{book_id}", json={"price": "99.5"})
    assert r.json["data"]["published_at"] == published_at
    assert r.json["data"]["price"] == "99.50"


def test_delete_book_archives_when_ordered(admin_client, reader_client, make_book, place_order):
    unsold = make_book()
    sold = make_book()
    place_order(reader_client, sold)

    r = admin_client.delete(f"/admin/books/{unsold}")
    assert r.json["data"] == {"id": unsold, "outcome": "deleted"}

    r = admin_client.delete(f"/admin/books/{sold}")
    assert r.json["data"]["outcome"] == "archived"
    r = admin_client.get(f"/api/books/{sold}")
    assert r.json["data"]["status"] == "archived"
    assert r.json["data"]["is_available"] is False


def test_upload_and_download_book_file(admin_client, reader_client, other_client, make_book, place_order, pay_order):
    book_id = make_book()

    r = admin_client.post(
        f"/admin/books/{book_id}/file",
        data={"file": (io.BytesIO(b"not really an image"), "cover.png")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400

    r = admin_client.post(
        f"/admin/books/{book_id}/file",
        data={"file": (io.BytesIO(b"EPUB-BYTES"), "quiet-garden.epub")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    assert r.json["data"]["book_file_key"].startswith(f"books/{book_id}/")

    # Not purchased yet.
    r = reader_client.get(f"/api/books/{book_id}/download")
    assert r.status_code == 403

    order = place_order(reader_client, book_id)
    assert pay_order(order["id"]) == "paid"

    r = reader_client.get(f"/api/books/{book_id}/download")
    assert r.status_code == 200
    assert r.data == b"EPUB-BYTES"
    assert "quiet-garden.epub" in r.headers["Content-Disposition"]

    assert other_client.get(f"/api/books/{book_id}/download").status_code == 403


def test_download_without_file_is_404(reader_client, make_book):
    book_id = make_book()
    assert reader_client.get(f"/api/books/{book_id}/download").status_code == 404


def test_reviews_flow(client, reader_client, other_client, make_book, place_order, pay_order):
    book_id = make_book()

    r = reader_client.post(f"/api/books/{book_id}/reviews", json={"rating": 6})
    assert r.status_code == 400
    r = reader_client.post(f"/api/books/{book_id}/reviews", json={"rating": "5"})
    assert r.status_code == 400

    order = place_order(other_client, book_id)
    pay_order(order["id"])

    r = reader_client.post(f"/api/books/{book_id}/reviews", json={"rating": 4, "comment": "Lovely"})
    assert r.status_code == 201
    assert r.json["data"]["is_verified_purchase"] is False

    r = other_client.post(f"/api/books/{book_id}/reviews", json={"rating": 5})
    assert r.json["data"]["is_verified_purchase"] is True

    r = reader_client.post(f"/api/books/{book_id}/reviews", json={"rating": 3})
    assert r.status_code == 409

    r = client.get(f"/api/books/{book_id}/reviews")
    data = r.json["data"]
    assert data["review_count"] == 2
    assert data["average_rating"] == 4.5
    assert len(data["reviews"]) == 2


def test_categories_crud(admin_client, client):
    r = admin_client.post("/admin/categories", json={"name": "Tech Notes", "kind": "blog"})
    assert r.status_code == 201
    cat_id = r.json["data"]["id"]
    assert r.json["data"]["slug"] == "tech-notes"

    assert admin_client.post("/admin/categories", json={"name": "Tech Notes"}).status_code == 409
    assert admin_client.post("/admin/categories", json={"name": "X", "kind": "video"}).status_code == 400

    r = client.get("/api/categories?kind=blog")
    assert [c["name"] for c in r.json["data"]] == ["Tech Notes"]
    assert client.get("/api/categories?kind=book").json["data"] == []

    r = admin_client.put(f"/admin/categories/{cat_id}", json={"is_active": False})
    assert r.json["data"]["is_active"] is False
    assert client.get("/api/categories").json["data"] == []

    assert admin_client.delete(f"/admin/categories/{cat_id}").status_code == 200
    assert admin_client.delete(f"/admin/categories/{cat_id}").status_code == 404


def test_payment_updates_sales_counters(app, reader_client, make_book, place_order, pay_order):
    book_id = make_book(price="1000.00", stock=5)
    order = place_order(reader_client, book_id, quantity=2)
    pay_order(order["id"])

    with session_scope(app) as s:
        book = s.get(Book, book_id)
        assert book.sales_count == 2
        assert str(book.total_revenue) == "2000.00"
        assert book.stock == 3
