from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g

from app.edify.errors import Forbidden, Unauthorized
from app.edify.models import User


def permission_keys(user: User | None) -> set[str]:
    """Union of permission keys over the user's roles; empty for anonymous or disabled users."""
    if not user or not user.is_active:
        return set()
    return {perm.key for role in user.roles for perm in role.permissions}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def current_user() -> User | None:
    return getattr(g, "current_user", None)


def login_required_user() -> User:
    user = current_user()
    if not user or not user.is_active:
        raise Unauthorized("Authentication required")
    return user


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        login_required_user()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = login_required_user()
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                current_app.logger.warning(
                    "Forbidden: missing_permission=%s request_id=%s", permission_key, getattr(g, "request_id", None)
                )
                raise Forbidden("Insufficient permissions")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
