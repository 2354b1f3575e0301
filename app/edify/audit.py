from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from flask import g, has_request_context, request

from app.edify.models import AuditEvent

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User


def _request_meta() -> tuple[str | None, str | None]:
    """(request id, client ip) for the current request; both None in scripts and webhook replays."""
    if not has_request_context():
        return None, None
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return getattr(g, "request_id", None), forwarded or request.remote_addr


def record_event(
    s: "Session",
    *,
    actor: "User | None",
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append an audit row to the caller's session; it commits with the business change.

    Actions are dotted `<entity>.<verb>` names ("order.paid", "coupon.create").
    """
    current_request_id, client_ip = _request_meta()
    event = AuditEvent(
        request_id=request_id or current_request_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip,
    )
    s.add(event)
    return event
