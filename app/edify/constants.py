"""
Central constants for the EdifyPub backend.
"""
from __future__ import annotations

# Role keys seeded by scripts/init_db.py
ROLE_ADMIN = "admin"
ROLE_AUTHOR = "author"
ROLE_READER = "reader"

# (key, display name); admin gets all of them
PERMISSIONS = (
    ("admin.view", "Admin: dashboard"),
    ("books.manage", "Books: manage catalog"),
    ("orders.manage", "Orders: manage all orders"),
    ("coupons.manage", "Coupons: manage"),
    ("preorders.manage", "Preorders: manage"),
    ("courses.manage", "Courses: manage"),
    ("newsletter.manage", "Newsletter: manage subscribers and campaigns"),
    ("blog.manage", "Blog: manage posts"),
    ("seo.manage", "SEO: manage settings, redirects, sitemap"),
)

SUPPORTED_CURRENCIES = ("NGN", "USD", "GBP", "EUR", "GHS", "KES", "ZAR", "UGX", "TZS")
