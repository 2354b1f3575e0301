from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.modules.newsletter.service import (
    list_campaigns,
    list_subscribers,
    remove_subscriber,
    run_scheduled_campaigns,
    schedule_campaign,
    send_newsletter,
)
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import clean_str, ok

bp = Blueprint("newsletter_admin", __name__)


@bp.get("/newsletter/subscribers")
@require_permission("newsletter.manage")
def subscribers_list():
    s = db_session()
    return ok(list_subscribers(s, request.args))


@bp.delete("/newsletter/subscribers/<int:subscriber_id>")
@require_permission("newsletter.manage")
def subscribers_delete(subscriber_id: int):
    s = db_session()
    hard = (request.args.get("hard") or "").lower() in ("1", "true", "yes")
    outcome = remove_subscriber(s, subscriber_id, login_required_user(), hard=hard)
    s.commit()
    return ok({"id": subscriber_id, "outcome": outcome}, message=f"Subscriber {outcome}")


@bp.post("/newsletter/send")
@require_permission("newsletter.manage")
def newsletter_send():
    s = db_session()
    result = send_newsletter(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    sent, failed = len(result["successful"]), len(result["failed"])
    return ok(result, message=f"Newsletter sent to {sent} recipient(s), {failed} failed")


@bp.get("/newsletter/campaigns")
@require_permission("newsletter.manage")
def campaigns_list():
    s = db_session()
    return ok({"campaigns": [c.to_dict() for c in list_campaigns(s, clean_str(request.args.get("status")))]})


@bp.post("/newsletter/schedule")
@require_permission("newsletter.manage")
def newsletter_schedule():
    s = db_session()
    campaign = schedule_campaign(s, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(campaign.to_dict(), message="Newsletter scheduled", status=201)


@bp.post("/newsletter/scheduled/run")
@require_permission("newsletter.manage")
def newsletter_run_scheduled():
    s = db_session()
    results = run_scheduled_campaigns(s, actor=login_required_user())
    s.commit()
    return ok({"campaigns": results, "sent": len(results)}, message=f"{len(results)} scheduled campaign(s) sent")
