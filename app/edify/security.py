from __future__ import annotations

import hmac
import math
import secrets
import threading
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import Request, current_app, g, request, session

from app.edify.errors import RateLimited


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True)
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and hmac.compare_digest(str(token), str(expected)))


class RateLimiter:
    """
    Fixed-window in-memory counter per key.
    Per-process only; behind several gunicorn workers the effective limit is limit * workers.
    """

    def __init__(self, limit: int, window_seconds: int, *, message: str = "Too many requests") -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message
        self._hits: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: float | None = None) -> int | None:
        """Count one hit. Returns seconds to wait when over the limit, else None."""
        now = time.monotonic() if now is None else now
        with self._lock:
            start, count = self._hits.get(key, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            count += 1
            self._hits[key] = (start, count)
            if count > self.limit:
                return max(1, math.ceil(self.window_seconds - (now - start)))
        return None

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


AUTH_LIMITER = RateLimiter(5, 15 * 60, message="Too many authentication attempts, please try again later.")
PAYMENT_LIMITER = RateLimiter(10, 60, message="Too many payment requests, please slow down.")
COUPON_LIMITER = RateLimiter(30, 60, message="Too many coupon validation attempts.")
NEWSLETTER_LIMITER = RateLimiter(10, 60, message="Too many subscription attempts.")

ALL_LIMITERS = (AUTH_LIMITER, PAYMENT_LIMITER, COUPON_LIMITER, NEWSLETTER_LIMITER)


def client_key() -> str:
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "unknown").split(",")[0].strip()
    user = getattr(g, "current_user", None)
    return f"{ip}:{user.id}" if user else ip


def rate_limited(limiter: RateLimiter) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            if current_app.config.get("RATE_LIMIT_ENABLED", True):
                retry_after = limiter.hit(f"{request.endpoint}:{client_key()}")
                if retry_after is not None:
                    current_app.logger.warning("Rate limit exceeded endpoint=%s key=%s", request.endpoint, client_key())
                    raise RateLimited(limiter.message, retry_after)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
