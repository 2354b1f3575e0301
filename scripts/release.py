"""
Release phase: apply Alembic migrations, then seed roles and the admin account.

Runs before every deploy (and from scripts/start.py). Refuses to touch SQLite
when ENV is production.

Usage:
  DATABASE_URL=postgres://... python scripts/release.py
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    from app.edify.config import normalize_database_url

    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL must be set for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against SQLite in production; point DATABASE_URL at Postgres.")
    return normalize_database_url(url)


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def run_release() -> None:
    db_url = _database_url()
    print(f"=== EdifyPub release (ENV={os.environ.get('ENV') or 'unset'}) ===", flush=True)

    print("Applying migrations...", flush=True)
    migrate(db_url)

    print("Seeding roles, permissions and admin...", flush=True)
    from scripts.init_db import seed_database

    admin_email = seed_database(db_url)
    print(f"=== Release complete (admin: {admin_email}) ===", flush=True)


if __name__ == "__main__":
    run_release()
