"""Tests for SEO settings, redirects, page tracking, robots.txt and the sitemap."""

import xml.etree.ElementTree as ET

from app.edify.modules.seo.config import generate_meta_tags, interpolate
from app.edify.modules.seo.service import SITEMAP_NS, device_type_from_user_agent

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
IPAD_UA = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15"


def test_interpolate_leaves_unknown_placeholders():
    data = {"book": {"title": "Night Harbor", "tags": ["sea", "noir"], "category": None}}
    assert interpolate("{book.title} - EdifyPub", data) == "Night Harbor - EdifyPub"
    assert interpolate("{book.tags}", data) == "sea, noir"
    assert interpolate("{book.category} / {author.name}", data) == "{book.category} / {author.name}"
    assert interpolate("{book.title}", None) == "{book.title}"
    assert interpolate(None, data) is None


def test_generate_meta_tags_falls_back_to_defaults():
    meta = generate_meta_tags(
        {"title": "T", "description": "D", "keywords": ["a", "b"], "robots_index": False, "robots_follow": True},
        "https://edify.test",
    )
    assert meta["keywords"] == "a, b"
    assert meta["robots"] == "noindex,follow"
    assert meta["canonical"] == "https://edify.test"
    assert meta["og"]["title"] == "T"
    assert meta["og"]["site_name"] == "EdifyPub"
    assert meta["twitter"]["site"] == "@edifypub"


def test_device_type_from_user_agent():
    assert device_type_from_user_agent(IPHONE_UA) == "mobile"
    assert device_type_from_user_agent(IPAD_UA) == "tablet"
    assert device_type_from_user_agent(None) == "desktop"


def test_page_seo_defaults(client, make_book):
    r = client.get("/api/seo?page_type=home")
    assert r.status_code == 200
    seo, meta = r.json["data"]["seo"], r.json["data"]["meta"]
    assert seo["title"] == "EdifyPub - Digital Publishing Platform"
    assert seo["source"] == "default"
    assert meta["robots"] == "index,follow"
    assert meta["canonical"] == "https://edify.test"

    assert client.get("/api/seo?page_type=search").json["data"]["meta"]["robots"] == "noindex,follow"

    make_book(title="Night Harbor", description="A quiet thriller.")
    r = client.get("/api/seo?page_type=book-detail&slug=night-harbor")
    seo = r.json["data"]["seo"]
    assert seo["title"] == "Night Harbor - EdifyPub"
    assert seo["description"] == "A quiet thriller."
    assert seo["keywords"][0] == "{book.category}"
    assert r.json["data"]["meta"]["og"]["type"] == "book"

    r = client.get("/api/seo?page_type=book-detail&slug=missing")
    assert r.json["data"]["seo"]["title"] == "{book.title} - EdifyPub"

    assert client.get("/api/seo?page_type=nonsense").status_code == 404
    assert client.get("/api/seo").status_code == 400


def test_admin_settings_override_defaults(client, admin_client, reader_client):
    payload = {"page_type": "books", "title": "All Books", "description": "Every title we publish", "keywords": ["books", " "]}
    assert reader_client.post("/admin/seo/settings", json=payload).status_code == 403

    r = admin_client.post("/admin/seo/settings", json=payload)
    assert r.status_code == 201
    assert r.json["data"]["keywords"] == ["books"]
    assert r.json["data"]["priority"] == 0.5

    r = admin_client.post("/admin/seo/settings", json={**payload, "title": "Our Books", "robots_index": False})
    assert r.status_code == 200
    setting_id = r.json["data"]["id"]

    r = admin_client.post(
        "/admin/seo/settings", json={**payload, "page_slug": "fiction", "title": "Fiction Books", "og_image": "https://cdn.test/f.png"}
    )
    assert r.status_code == 201

    r = client.get("/api/seo?page_type=books")
    assert r.json["data"]["seo"]["title"] == "Our Books"
    assert r.json["data"]["seo"]["source"] == "setting"
    assert r.json["data"]["meta"]["robots"] == "noindex,follow"

    r = client.get("/api/seo?page_type=books&slug=fiction")
    assert r.json["data"]["seo"]["title"] == "Fiction Books"
    assert r.json["data"]["meta"]["og"]["images"] == ["https://cdn.test/f.png"]
    assert client.get("/api/seo?page_type=books&slug=poetry").json["data"]["seo"]["title"] == "Our Books"

    assert len(admin_client.get("/admin/seo/settings?page_type=books").json["data"]) == 2
    assert admin_client.delete(f"/admin/seo/settings/{setting_id}").status_code == 200
    assert client.get("/api/seo?page_type=books").json["data"]["seo"]["title"] == "Books - EdifyPub"


def test_admin_settings_validation(admin_client):
    r = admin_client.post(
        "/admin/seo/settings",
        json={"page_type": "moon", "title": "", "description": "", "keywords": ["k"] * 11, "priority": 2, "og_type": "film"},
    )
    assert r.status_code == 400
    details = r.json["details"]
    assert any(d.startswith("Invalid page_type") for d in details)
    assert "Title is required." in details
    assert "Description is required." in details
    assert "Maximum 10 keywords allowed." in details
    assert "Priority must be between 0 and 1." in details
    assert "og_type must be one of: website, article, book, profile" in details


def test_redirects(client, admin_client):
    r = admin_client.post("/admin/seo/redirects", json={"from_url": "/old-books", "to_url": "/books"})
    assert r.status_code == 201
    redirect = r.json["data"]
    assert redirect["status_code"] == 301

    assert admin_client.post("/admin/seo/redirects", json={"from_url": "/old-books", "to_url": "/x"}).status_code == 409
    r = admin_client.post("/admin/seo/redirects", json={"from_url": "/same", "to_url": "/same", "status_code": 307})
    assert set(r.json["details"]) == {"from_url and to_url cannot be the same.", "status_code must be 301 or 302."}

    for _ in range(2):
        r = client.get("/api/seo/redirect?from=/old-books")
        assert r.json["data"] == {"to_url": "/books", "status_code": 301}
    assert client.get("/api/seo/redirect?from=/nowhere").json["data"] == {"to_url": None}
    assert client.get("/api/seo/redirect").status_code == 400

    listing = admin_client.get("/admin/seo/redirects").json["data"]
    assert listing[0]["hit_count"] == 2

    r = admin_client.put(f"/admin/seo/redirects/{redirect['id']}", json={"is_active": False, "status_code": 302})
    assert r.json["data"]["status_code"] == 302
    assert client.get("/api/seo/redirect?from=/old-books").json["data"]["to_url"] is None

    assert admin_client.delete(f"/admin/seo/redirects/{redirect['id']}").status_code == 200
    assert admin_client.delete(f"/admin/seo/redirects/{redirect['id']}").status_code == 404


def test_track_page_views_and_analytics(app, admin_client):
    beacon = app.test_client()
    r = beacon.post(
        "/api/seo/analytics/track",
        json={"page_url": "/books", "page_title": "Books", "scroll_depth": 150, "time_on_page": -5, "utm_source": "news"},
        headers={"User-Agent": IPHONE_UA, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert r.status_code == 201
    beacon.post("/api/seo/analytics/track", json={"page_url": "/books"}, headers={"User-Agent": IPAD_UA})
    beacon.post("/api/seo/analytics/track", json={"page_url": "/blog", "device_type": "tv"})
    assert beacon.post("/api/seo/analytics/track", json={}).status_code == 400

    data = admin_client.get("/admin/seo/analytics?page_url=/books").json["data"]
    assert data["total"] == 2
    first = [v for v in data["views"] if v["utm_source"] == "news"][0]
    assert first["scroll_depth"] == 100
    assert first["time_on_page"] == 0
    assert first["device_type"] == "mobile"
    assert sorted(v["device_type"] for v in data["views"]) == ["mobile", "tablet"]
    assert data["popular_pages"][0] == {"page_url": "/books", "page_title": "Books", "views": 2}

    assert admin_client.get("/admin/seo/analytics?start_date=yesterday").status_code == 400
    assert admin_client.get("/admin/seo/analytics?end_date=2000-01-01").json["data"]["total"] == 0


def test_robots_txt(client):
    r = client.get("/robots.txt")
    assert r.status_code == 200
    assert r.mimetype == "text/plain"
    body = r.get_data(as_text=True)
    assert "Sitemap: https://edify.test/sitemap.xml" in body
    assert "Disallow: /admin/" in body
    assert body.startswith("User-agent: *\n")


def test_sitemap_regenerate_and_serve(client, admin_client, make_book):
    make_book(title="Night Harbor")
    make_book(title="Unfinished", status="draft")
    admin_client.post("/admin/blog", json={"title": "Launch Notes", "content": "<p>Hi</p>", "status": "published"})

    assert client.get("/sitemap.xml").status_code == 200

    r = admin_client.post("/admin/seo/sitemap/regenerate")
    assert r.status_code == 200
    assert r.json["data"]["entries"] == 10

    r = client.get("/sitemap.xml")
    assert r.mimetype == "application/xml"
    root = ET.fromstring(r.data)
    assert root.tag == f"{{{SITEMAP_NS}}}urlset"
    locs = [u.find(f"{{{SITEMAP_NS}}}loc").text for u in root]
    assert locs[0] == "https://edify.test"
    assert "https://edify.test/books/night-harbor" in locs
    assert "https://edify.test/blog/launch-notes" in locs
    assert not any("unfinished" in loc for loc in locs)
