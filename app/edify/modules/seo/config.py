"""
Built-in SEO defaults per page type and the helpers that render them.

Templates use `{a.b}` placeholders resolved against the page data; unknown
placeholders are left in place.
"""
from __future__ import annotations

import re
from typing import Any

SITE_NAME = "EdifyPub"
DEFAULT_TWITTER_HANDLE = "@edifypub"

PAGE_TYPES = (
    "home",
    "books",
    "book-detail",
    "blog",
    "blog-post",
    "academy",
    "course",
    "about",
    "contact",
    "publishing",
    "author",
    "category",
    "search",
    "account",
    "admin",
)

_BASE = {
    "keywords": [],
    "canonical_url": None,
    "og_title": None,
    "og_description": None,
    "og_image": None,
    "og_type": "website",
    "twitter_card": "summary_large_image",
    "twitter_site": None,
    "twitter_creator": None,
    "robots_index": True,
    "robots_follow": True,
    "structured_data": None,
    "priority": 0.5,
    "change_freq": "monthly",
}


def _page(title: str, description: str, keywords: list[str], **overrides: Any) -> dict[str, Any]:
    return {**_BASE, "title": title, "description": description, "keywords": keywords, **overrides}


DEFAULT_SEO: dict[str, dict[str, Any]] = {
    "home": _page(
        "EdifyPub - Digital Publishing Platform",
        "Discover inspiring books, courses, and resources on EdifyPub. Your gateway to digital publishing and learning.",
        ["digital publishing", "ebooks", "online courses", "writing platform", "book marketplace"],
        priority=1.0,
        change_freq="daily",
    ),
    "books": _page(
        "Books - EdifyPub",
        "Explore our extensive collection of digital books across various genres and topics.",
        ["books", "ebooks", "digital books", "reading", "literature"],
        priority=0.9,
        change_freq="daily",
    ),
    "book-detail": _page(
        "{book.title} - EdifyPub",
        "{book.description}",
        ["{book.category}", "ebook", "digital book"],
        og_type="book",
        priority=0.8,
        change_freq="weekly",
    ),
    "blog": _page(
        "Blog - EdifyPub",
        "Read the latest insights, tips, and stories about writing, publishing, and the creative journey.",
        ["blog", "writing tips", "publishing advice", "author insights"],
        priority=0.7,
        change_freq="daily",
    ),
    "blog-post": _page(
        "{post.title} - EdifyPub Blog",
        "{post.excerpt}",
        ["{post.tags}", "blog", "writing", "publishing"],
        og_type="article",
        priority=0.6,
        change_freq="weekly",
    ),
    "academy": _page(
        "Academy - EdifyPub",
        "Enhance your writing and publishing skills with our comprehensive courses and tutorials.",
        ["writing courses", "publishing courses", "online learning", "education"],
        priority=0.8,
        change_freq="weekly",
    ),
    "course": _page(
        "{course.title} - EdifyPub Academy",
        "{course.description}",
        ["{course.category}", "course", "online learning", "education"],
        priority=0.7,
        change_freq="weekly",
    ),
    "about": _page(
        "About - EdifyPub",
        "Learn about EdifyPub, our mission to democratize digital publishing and empower authors worldwide.",
        ["about edifypub", "digital publishing", "author platform", "publishing services"],
        priority=0.6,
    ),
    "contact": _page(
        "Contact - EdifyPub",
        "Get in touch with the EdifyPub team for support, partnerships, or general inquiries.",
        ["contact", "support", "help", "customer service"],
    ),
    "publishing": _page(
        "Publishing - EdifyPub",
        "Publish your work with EdifyPub and reach a global audience through our digital platform.",
        ["publish book", "self publishing", "digital publishing", "author services"],
        priority=0.8,
        change_freq="weekly",
    ),
    "author": _page(
        "{author.name} - EdifyPub",
        "Discover books and content by {author.name} on EdifyPub.",
        ["{author.name}", "author", "books", "writer"],
        og_type="profile",
        priority=0.6,
    ),
    "category": _page(
        "{category.name} Books - EdifyPub",
        "Explore {category.name} books and resources on EdifyPub.",
        ["{category.name}", "books", "category", "genre"],
        priority=0.7,
        change_freq="weekly",
    ),
    "search": _page(
        "Search Results - EdifyPub",
        "Find books, courses, and resources on EdifyPub.",
        ["search", "find books", "discover content"],
        priority=0.4,
        change_freq="never",
        robots_index=False,
    ),
    "account": _page(
        "My Account - EdifyPub",
        "Manage your EdifyPub account, orders, and library.",
        ["account", "profile", "dashboard"],
        priority=0.3,
        change_freq="never",
        robots_index=False,
    ),
    "admin": _page(
        "Admin Dashboard - EdifyPub",
        "Administrative dashboard for EdifyPub management.",
        ["admin", "dashboard", "management"],
        priority=0.1,
        change_freq="never",
        robots_index=False,
    ),
}

# (path, priority, changefreq) for the sitemap's static section.
STATIC_PAGES = (
    ("", 1.0, "daily"),
    ("/books", 0.9, "daily"),
    ("/blog", 0.8, "daily"),
    ("/academy", 0.8, "weekly"),
    ("/about", 0.6, "monthly"),
    ("/contact", 0.5, "monthly"),
    ("/publishing", 0.8, "weekly"),
    ("/services", 0.7, "weekly"),
)

ROBOTS_DISALLOW = ("/admin/", "/api/", "/auth/", "/dashboard/", "/account/", "/404", "/500")
ROBOTS_ALLOW = ("/", "/books/", "/blog/", "/academy/", "/services/", "/about/")

_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")


def interpolate(template: str | None, data: dict[str, Any] | None) -> str | None:
    if template is None or not data:
        return template

    def _sub(match: re.Match) -> str:
        value: Any = data
        for part in match.group(1).split("."):
            if not isinstance(value, dict) or part not in value or value[part] is None:
                return match.group(0)
            value = value[part]
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def robots_directive(index: bool, follow: bool) -> str:
    return f"{'index' if index else 'noindex'},{'follow' if follow else 'nofollow'}"


def generate_meta_tags(seo: dict[str, Any], base_url: str) -> dict[str, Any]:
    canonical = seo.get("canonical_url") or base_url
    title = seo.get("og_title") or seo["title"]
    description = seo.get("og_description") or seo["description"]
    images = [seo["og_image"]] if seo.get("og_image") else []
    return {
        "title": seo["title"],
        "description": seo["description"],
        "keywords": ", ".join(seo.get("keywords") or []),
        "canonical": canonical,
        "robots": robots_directive(seo.get("robots_index", True), seo.get("robots_follow", True)),
        "og": {
            "title": title,
            "description": description,
            "url": canonical,
            "site_name": SITE_NAME,
            "images": images,
            "type": seo.get("og_type") or "website",
        },
        "twitter": {
            "card": seo.get("twitter_card") or "summary_large_image",
            "site": seo.get("twitter_site") or DEFAULT_TWITTER_HANDLE,
            "creator": seo.get("twitter_creator") or DEFAULT_TWITTER_HANDLE,
            "title": title,
            "description": description,
            "images": images,
        },
    }
