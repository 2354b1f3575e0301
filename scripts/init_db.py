"""
Seed roles, permissions and the first admin account.

Safe to run on every deploy: existing rows are reused and an existing admin's
password is never replaced.

Usage:
  ADMIN_EMAIL=... ADMIN_PASSWORD=... python scripts/init_db.py
"""
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.edify.config import normalize_database_url  # noqa: E402
from app.edify.constants import PERMISSIONS, ROLE_ADMIN, ROLE_AUTHOR, ROLE_READER  # noqa: E402
from app.edify.models import Permission, Role, User  # noqa: E402

ROLE_NAMES = {
    ROLE_ADMIN: "Administrator",
    ROLE_AUTHOR: "Author",
    ROLE_READER: "Reader",
}


def _get_or_add(s: Session, model, key: str, name: str):
    row = s.query(model).filter(model.key == key).one_or_none()
    if row is None:
        row = model(key=key, name=name)
        s.add(row)
    return row


def seed(s: Session, *, admin_email: str, admin_password: str) -> User:
    """Every permission goes to the admin role; authors and readers start with none."""
    roles = {key: _get_or_add(s, Role, key, name) for key, name in ROLE_NAMES.items()}

    admin_role = roles[ROLE_ADMIN]
    for key, name in PERMISSIONS:
        perm = _get_or_add(s, Permission, key, name)
        if perm not in admin_role.permissions:
            admin_role.permissions.append(perm)

    admin = s.query(User).filter(User.email == admin_email).one_or_none()
    if admin is None:
        admin = User(email=admin_email, name="Administrator", password_hash=generate_password_hash(admin_password), is_active=True)
        s.add(admin)
    if admin_role not in admin.roles:
        admin.roles.append(admin_role)
    s.flush()
    return admin


def seed_database(database_url: str | None = None) -> str:
    """Seed the database at `database_url` (default: $DATABASE_URL) without building the Flask app."""
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@edifybooks.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    url = normalize_database_url((database_url or os.environ.get("DATABASE_URL") or "sqlite:///edify.db").strip())

    engine = create_engine(url, future=True, pool_pre_ping=True)
    try:
        with Session(engine, expire_on_commit=False) as s, s.begin():
            seed(s, admin_email=admin_email, admin_password=admin_password)
    finally:
        engine.dispose()
    return admin_email


def main() -> None:
    admin_email = seed_database()
    print("Seeded roles and permissions.")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


if __name__ == "__main__":
    main()
