from __future__ import annotations

import html
import logging
import re
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy import func, or_, update

from app.edify.audit import record_event
from app.edify.emails import send_newsletter_issue, send_newsletter_welcome
from app.edify.errors import ApiError, NotFound, ValidationFailed, raise_if_errors
from app.edify.modules.newsletter.models import CAMPAIGN_STATUSES, NewsletterCampaign, NewsletterSubscriber
from app.edify.utils import clean_str, is_valid_email, page_args, paginate, parse_datetime, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RE = re.compile(r"\n{3,}")


def normalize_email(email: Any) -> str:
    return (clean_str(email) or "").lower()


def html_to_text(content: str) -> str:
    text = re.sub(r"(?i)<br\s*/?>|</p>|</h[1-6]>|</li>", "\n", content or "")
    text = html.unescape(_TAG_RE.sub("", text))
    return _BLANK_RE.sub("\n\n", text).strip()


def _get_subscriber(s: "Session", email: str) -> NewsletterSubscriber | None:
    return s.query(NewsletterSubscriber).filter(NewsletterSubscriber.email == email).one_or_none()


# ---------- Public subscription ----------
def subscribe(s: "Session", email: Any, name: Any = None) -> tuple[str, NewsletterSubscriber]:
    """Returns ("subscribed" | "reactivated" | "already_subscribed", subscriber)."""
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationFailed(["Please provide a valid email address."])
    name = clean_str(name)
    sub = _get_subscriber(s, email)
    if sub is not None:
        if sub.is_active:
            return "already_subscribed", sub
        sub.is_active = True
        sub.unsubscribed_at = None
        sub.subscribed_at = utcnow()
        if name:
            sub.name = name
        logger.info("Newsletter subscriber reactivated id=%s", sub.id)
        return "reactivated", sub

    sub = NewsletterSubscriber(email=email, name=name, is_active=True, subscribed_at=utcnow())
    s.add(sub)
    s.flush()
    send_newsletter_welcome(email, name)
    logger.info("Newsletter subscriber added id=%s", sub.id)
    return "subscribed", sub


def subscription_status(s: "Session", email: Any) -> dict:
    email = normalize_email(email)
    if not email:
        raise ValidationFailed(["Email is required."])
    sub = _get_subscriber(s, email)
    return {
        "email": email,
        "subscribed": bool(sub and sub.is_active),
        "subscriber": sub.to_dict() if sub else None,
    }


def unsubscribe(s: "Session", email: Any) -> tuple[str, NewsletterSubscriber]:
    email = normalize_email(email)
    if not email:
        raise ValidationFailed(["Email is required."])
    sub = _get_subscriber(s, email)
    if sub is None:
        raise NotFound("Email not found in our newsletter list")
    if not sub.is_active:
        return "already_unsubscribed", sub
    sub.is_active = False
    sub.unsubscribed_at = utcnow()
    logger.info("Newsletter subscriber unsubscribed id=%s", sub.id)
    return "unsubscribed", sub


# ---------- Admin ----------
def list_subscribers(s: "Session", args) -> dict:
    page, limit = page_args(args, default_limit=50, max_limit=200)
    q = s.query(NewsletterSubscriber)
    active = (args.get("active") or "").strip().lower()
    if active in ("true", "1", "yes"):
        q = q.filter(NewsletterSubscriber.is_active.is_(True))
    elif active in ("false", "0", "no"):
        q = q.filter(NewsletterSubscriber.is_active.is_(False))
    search = clean_str(args.get("search"))
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(NewsletterSubscriber.email.like(like), func.lower(NewsletterSubscriber.name).like(like)))
    subs, pagination = paginate(q.order_by(NewsletterSubscriber.subscribed_at.desc(), NewsletterSubscriber.id.desc()), page, limit)
    active_count = s.query(func.count(NewsletterSubscriber.id)).filter(NewsletterSubscriber.is_active.is_(True)).scalar() or 0
    return {
        "subscribers": [x.to_dict() for x in subs],
        "active_count": int(active_count),
        "pagination": pagination,
    }


def remove_subscriber(s: "Session", subscriber_id: int, user: "User", *, hard: bool = False) -> str:
    sub = s.get(NewsletterSubscriber, subscriber_id)
    if sub is None:
        raise NotFound("Subscriber not found")
    if hard:
        s.delete(sub)
        outcome = "deleted"
    else:
        sub.is_active = False
        sub.unsubscribed_at = sub.unsubscribed_at or utcnow()
        outcome = "deactivated"
    record_event(s, actor=user, action=f"newsletter.subscriber_{outcome}", entity_type="NewsletterSubscriber", entity_id=str(subscriber_id))
    return outcome


def validate_campaign_payload(payload: dict, *, scheduled: bool = False) -> list[str]:
    errors: list[str] = []
    subject = clean_str(payload.get("subject"))
    if not subject:
        errors.append("Subject is required.")
    elif len(subject) > 255:
        errors.append("Subject too long.")
    if not clean_str(payload.get("content")):
        errors.append("Content is required.")
    test_email = payload.get("test_email")
    if test_email and not is_valid_email(normalize_email(test_email)):
        errors.append("test_email must be a valid email address.")
    if scheduled:
        try:
            when = parse_datetime(payload.get("scheduled_for"))
        except ValueError:
            when = None
        if when is None:
            errors.append("scheduled_for must be an ISO date-time.")
        elif when <= utcnow():
            errors.append("scheduled_for must be in the future.")
    return errors


def send_in_batches(
    recipients: Iterable[str],
    subject: str,
    content: str,
    *,
    batch_size: int,
    batch_delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """
    Send one issue per recipient, `batch_size` at a time with `batch_delay` seconds between batches.

    Failures are collected, never raised.
    """
    recipients = list(recipients)
    text = html_to_text(content)
    successful: list[str] = []
    failed: list[dict[str, str]] = []
    batch_size = max(int(batch_size), 1)
    for start in range(0, len(recipients), batch_size):
        if start and batch_delay > 0:
            sleep(batch_delay)
        for email in recipients[start : start + batch_size]:
            sent, message = send_newsletter_issue(email, subject, content, text)
            if sent:
                successful.append(email)
            else:
                failed.append({"email": email, "error": message})
    return {"successful": successful, "failed": failed}


def _active_emails(s: "Session") -> list[str]:
    rows = (
        s.query(NewsletterSubscriber.email)
        .filter(NewsletterSubscriber.is_active.is_(True))
        .order_by(NewsletterSubscriber.id.asc())
        .all()
    )
    return [r[0] for r in rows]


def _deliver(s: "Session", campaign: NewsletterCampaign, recipients: list[str]) -> dict:
    config = current_app.config
    result = send_in_batches(
        recipients,
        campaign.subject,
        campaign.content,
        batch_size=int(config.get("NEWSLETTER_BATCH_SIZE") or 50),
        batch_delay=float(config.get("NEWSLETTER_BATCH_DELAY") or 0),
    )
    campaign.status = "sent"
    campaign.sent_at = utcnow()
    campaign.recipients_count = len(recipients)
    campaign.success_count = len(result["successful"])
    campaign.failure_count = len(result["failed"])
    logger.info(
        "Newsletter campaign sent id=%s recipients=%s ok=%s failed=%s",
        campaign.id,
        campaign.recipients_count,
        campaign.success_count,
        campaign.failure_count,
    )
    return result


def send_newsletter(s: "Session", payload: dict, user: "User") -> dict:
    raise_if_errors(validate_campaign_payload(payload))
    subject = clean_str(payload["subject"])
    content = payload["content"]
    test_email = normalize_email(payload.get("test_email"))
    if test_email:
        # Test sends are not recorded as campaigns.
        result = send_in_batches([test_email], f"[TEST] {subject}", content, batch_size=1, batch_delay=0)
        return {**result, "test": True, "total": 1}

    recipients = _active_emails(s)
    if not recipients:
        raise ApiError("No active subscribers found")
    campaign = NewsletterCampaign(subject=subject, content=content, status="sending", created_by_user_id=user.id, created_at=utcnow())
    s.add(campaign)
    s.flush()
    result = _deliver(s, campaign, recipients)
    record_event(
        s,
        actor=user,
        action="newsletter.send",
        entity_type="NewsletterCampaign",
        entity_id=str(campaign.id),
        metadata={"recipients": campaign.recipients_count, "failed": campaign.failure_count},
    )
    return {**result, "campaign": campaign.to_dict(), "total": len(recipients)}


def schedule_campaign(s: "Session", payload: dict, user: "User") -> NewsletterCampaign:
    raise_if_errors(validate_campaign_payload(payload, scheduled=True))
    campaign = NewsletterCampaign(
        subject=clean_str(payload["subject"]),
        content=payload["content"],
        status="scheduled",
        scheduled_for=parse_datetime(payload["scheduled_for"]),
        created_by_user_id=user.id,
        created_at=utcnow(),
    )
    s.add(campaign)
    s.flush()
    record_event(s, actor=user, action="newsletter.schedule", entity_type="NewsletterCampaign", entity_id=str(campaign.id))
    return campaign


def list_campaigns(s: "Session", status: str | None = None) -> list[NewsletterCampaign]:
    q = s.query(NewsletterCampaign)
    if status:
        if status not in CAMPAIGN_STATUSES:
            raise ValidationFailed([f"status must be one of: {', '.join(CAMPAIGN_STATUSES)}"])
        q = q.filter(NewsletterCampaign.status == status)
    return q.order_by(NewsletterCampaign.created_at.desc(), NewsletterCampaign.id.desc()).all()


def claim_campaign(s: "Session", campaign_id: int) -> bool:
    """Move a scheduled campaign to sending. False when another run already claimed it."""
    res = s.execute(
        update(NewsletterCampaign)
        .where(NewsletterCampaign.id == campaign_id, NewsletterCampaign.status == "scheduled")
        .values(status="sending")
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def run_scheduled_campaigns(s: "Session", *, now: datetime | None = None, actor: "User | None" = None) -> list[dict]:
    """
    Send every campaign due at `now`. Each campaign is claimed and committed
    before delivery; a campaign another run has claimed is skipped.
    """
    now = now or utcnow()
    due_ids = [
        row[0]
        for row in s.query(NewsletterCampaign.id)
        .filter(NewsletterCampaign.status == "scheduled", NewsletterCampaign.scheduled_for <= now)
        .order_by(NewsletterCampaign.scheduled_for.asc())
        .all()
    ]
    if not due_ids:
        return []
    recipients = _active_emails(s)
    results = []
    for campaign_id in due_ids:
        claimed = claim_campaign(s, campaign_id)
        s.commit()
        if not claimed:
            logger.info("Scheduled campaign id=%s already claimed by another run", campaign_id)
            continue
        campaign = s.get(NewsletterCampaign, campaign_id, populate_existing=True)
        result = _deliver(s, campaign, recipients)
        record_event(
            s,
            actor=actor,
            action="newsletter.send_scheduled",
            entity_type="NewsletterCampaign",
            entity_id=str(campaign.id),
            metadata={"recipients": campaign.recipients_count, "failed": campaign.failure_count},
        )
        results.append({"campaign": campaign.to_dict(), "failed": result["failed"]})
        s.commit()
    return results
