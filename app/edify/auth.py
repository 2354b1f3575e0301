from __future__ import annotations

import uuid

from flask import Blueprint, current_app, g, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.edify.audit import record_event
from app.edify.constants import ROLE_READER
from app.edify.db import db_session
from app.edify.errors import Conflict, Unauthorized, raise_if_errors
from app.edify.models import Role, User
from app.edify.rbac import login_required_user, permission_keys, user_has_permission
from app.edify.security import AUTH_LIMITER, ensure_csrf_token, rate_limited
from app.edify.utils import clean_str, is_valid_email, ok, utcnow

bp = Blueprint("auth", __name__)

MIN_PASSWORD_LENGTH = 8


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def validate_register_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not is_valid_email(payload.get("email")):
        errors.append("A valid email is required.")
    if not clean_str(payload.get("name")):
        errors.append("Name is required.")
    password = payload.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return errors


def _user_payload(user: User) -> dict:
    data = user.to_dict()
    data["permissions"] = sorted(permission_keys(user))
    return data


def _start_session(user: User) -> None:
    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    ensure_csrf_token()


@bp.get("/csrf")
def csrf():
    return ok({"csrf_token": ensure_csrf_token()})


@bp.post("/register")
@rate_limited(AUTH_LIMITER)
def register():
    payload = request.get_json(silent=True) or {}
    raise_if_errors(validate_register_payload(payload))

    s = db_session()
    email = payload["email"].strip().lower()
    if s.query(User).filter(User.email == email).one_or_none():
        raise Conflict("An account with this email already exists")

    user = User(
        email=email,
        name=clean_str(payload.get("name")),
        phone=clean_str(payload.get("phone")),
        password_hash=generate_password_hash(payload["password"]),
        is_active=True,
    )
    reader = s.query(Role).filter(Role.key == ROLE_READER).one_or_none()
    if reader:
        user.roles.append(reader)
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    s.commit()

    _start_session(user)
    current_app.logger.info("Registered user id=%s", user.id)
    return ok(_user_payload(user), message="Account created", status=201)


@bp.post("/login")
@rate_limited(AUTH_LIMITER)
def login():
    payload = request.get_json(silent=True) or request.form
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        raise Unauthorized("Invalid email or password")

    user.last_login_at = utcnow()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    _start_session(user)
    return ok(_user_payload(user), message="Logged in")


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return ok(None, message="Logged out")


@bp.get("/me")
def me():
    user = login_required_user()
    data = _user_payload(user)
    data["is_admin"] = user_has_permission(user, "admin.view")
    return ok(data)
