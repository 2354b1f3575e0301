from __future__ import annotations

import math
import re
import unicodedata
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from flask import jsonify

TWO_PLACES = Decimal("0.01")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value: Any) -> Decimal:
    """Coerce a number/string to a 2-place Decimal. Raises ValueError on junk."""
    if isinstance(value, bool) or value is None:
        raise ValueError("Amount is required.")
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return d.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def money_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def slugify(text: str, max_length: int = 200) -> str:
    normalized = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug[:max_length].strip("-")


def is_valid_email(email: str | None) -> bool:
    return bool(email and EMAIL_RE.match(email.strip()))


def parse_datetime(raw: Any) -> datetime | None:
    """Parse ISO-8601 (date or datetime, optional Z) into naive UTC."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        s = str(raw).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def parse_int_arg(raw: str | None, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        value = int(raw) if raw not in (None, "") else default
    except (TypeError, ValueError):
        value = default
    if minimum is not None and value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def ok(data: Any = None, *, message: str | None = None, status: int = 200, **extra: Any):
    """Success envelope used by every JSON endpoint."""
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return jsonify(body), status


def paginate(q, page: int, limit: int) -> tuple[list, dict[str, int]]:
    """Apply LIMIT/OFFSET to a Query and return (items, pagination)."""
    total = q.order_by(None).count()
    items = q.limit(limit).offset((page - 1) * limit).all()
    pages = math.ceil(total / limit) if limit else 0
    return items, {"page": page, "limit": limit, "total": total, "pages": pages}


def page_args(args, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    page = parse_int_arg(args.get("page"), 1, minimum=1)
    limit = parse_int_arg(args.get("limit"), default_limit, minimum=1, maximum=max_limit)
    return page, limit


def unique_slug(s, model, text: str, *, exclude_id: int | None = None) -> str:
    """Slug derived from text, suffixed -2, -3, ... until no other row of `model` uses it."""
    base = slugify(text) or "item"
    candidate = base
    n = 2
    while True:
        q = s.query(model.id).filter(model.slug == candidate)
        if exclude_id is not None:
            q = q.filter(model.id != exclude_id)
        if q.first() is None:
            return candidate
        candidate = f"{base}-{n}"
        n += 1
