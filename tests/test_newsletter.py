"""Tests for newsletter subscriptions and campaigns."""

from datetime import timedelta

from app.edify.db import session_scope
from app.edify.modules.newsletter import service as newsletter_service
from app.edify.modules.newsletter.models import NewsletterCampaign
from app.edify.modules.newsletter.service import claim_campaign, html_to_text, run_scheduled_campaigns, send_in_batches
from app.edify.utils import utcnow


def _subscribe(client, email, name=None):
    return client.post("/api/newsletter/subscribe", json={"email": email, "name": name})


def test_subscribe_lifecycle(client, outbox):
    r = _subscribe(client, "  Fan@Example.com ", "Fan")
    assert r.status_code == 201
    assert r.json["data"]["status"] == "subscribed"
    assert r.json["data"]["subscriber"]["email"] == "fan@example.com"
    assert [m.subject for m in outbox] == ["Welcome to the EdifyPub newsletter"]
    assert "/api/newsletter/unsubscribe?email=fan%40example.com" in outbox[0].text

    r = _subscribe(client, "fan@example.com")
    assert r.status_code == 200
    assert r.json["data"]["status"] == "already_subscribed"

    assert client.post("/api/newsletter/unsubscribe", json={"email": "fan@example.com"}).status_code == 200
    r = _subscribe(client, "fan@example.com", "Returning Fan")
    assert r.status_code == 200
    assert r.json["data"]["status"] == "reactivated"
    assert r.json["data"]["subscriber"]["name"] == "Returning Fan"
    assert r.json["data"]["subscriber"]["unsubscribed_at"] is None
    assert len(outbox) == 1


def test_subscribe_rejects_bad_email(client):
    r = _subscribe(client, "not-an-email")
    assert r.status_code == 400
    assert r.json["details"] == ["Please provide a valid email address."]


def test_status_and_one_click_unsubscribe(app, client):
    _subscribe(client, "fan@example.com")

    r = client.get("/api/newsletter/subscribe?email=FAN@example.com")
    assert r.json["data"]["subscribed"] is True
    assert client.get("/api/newsletter/subscribe").status_code == 400

    # Links in emails are followed without any session or CSRF token.
    anon = app.test_client()
    r = anon.get("/api/newsletter/unsubscribe?email=fan@example.com")
    assert r.status_code == 200
    assert r.json["data"]["status"] == "unsubscribed"

    r = anon.post("/api/newsletter/unsubscribe", data={"email": "fan@example.com"})
    assert r.json["data"]["status"] == "already_unsubscribed"
    assert r.json["message"] == "Email is already unsubscribed"

    assert anon.get("/api/newsletter/unsubscribe?email=ghost@example.com").status_code == 404
    assert client.get("/api/newsletter/subscribe?email=fan@example.com").json["data"]["subscribed"] is False


def test_admin_subscribers_list_and_delete(client, admin_client, reader_client):
    for email in ("a@example.com", "b@example.com", "c@example.com"):
        _subscribe(client, email)
    client.post("/api/newsletter/unsubscribe", json={"email": "c@example.com"})

    assert reader_client.get("/admin/newsletter/subscribers").status_code == 403

    r = admin_client.get("/admin/newsletter/subscribers")
    data = r.json["data"]
    assert data["active_count"] == 2
    assert data["pagination"]["total"] == 3

    r = admin_client.get("/admin/newsletter/subscribers?active=false")
    assert [x["email"] for x in r.json["data"]["subscribers"]] == ["c@example.com"]

    ids = {x["email"]: x["id"] for x in data["subscribers"]}
    r = admin_client.delete(f"/admin/newsletter/subscribers/{ids['a@example.com']}")
    assert r.json["data"]["outcome"] == "deactivated"
    r = admin_client.delete(f"/admin/newsletter/subscribers/{ids['b@example.com']}?hard=1")
    assert r.json["data"]["outcome"] == "deleted"
    assert admin_client.delete(f"/admin/newsletter/subscribers/{ids['b@example.com']}").status_code == 404

    assert admin_client.get("/admin/newsletter/subscribers").json["data"]["active_count"] == 0


def test_send_test_email_records_no_campaign(app, admin_client, outbox):
    r = admin_client.post(
        "/admin/newsletter/send",
        json={"subject": "Spring list", "content": "<p>New books</p>", "test_email": "editor@example.com"},
    )
    assert r.status_code == 200
    assert r.json["data"]["test"] is True
    assert r.json["data"]["successful"] == ["editor@example.com"]
    assert outbox[-1].subject == "[TEST] Spring list"

    with session_scope(app) as s:
        assert s.query(NewsletterCampaign).count() == 0


def test_send_requires_subscribers_and_valid_payload(admin_client):
    r = admin_client.post("/admin/newsletter/send", json={"subject": "", "content": ""})
    assert r.status_code == 400
    assert set(r.json["details"]) == {"Subject is required.", "Content is required."}

    r = admin_client.post("/admin/newsletter/send", json={"subject": "Hi", "content": "<p>Hello</p>"})
    assert r.status_code == 400
    assert r.json["error"] == "No active subscribers found"


def test_send_to_active_subscribers(client, admin_client, outbox):
    _subscribe(client, "a@example.com")
    _subscribe(client, "b@example.com")
    _subscribe(client, "gone@example.com")
    client.post("/api/newsletter/unsubscribe", json={"email": "gone@example.com"})
    outbox.clear()

    r = admin_client.post("/admin/newsletter/send", json={"subject": "June issue", "content": "<h1>Hello</h1><p>Readers</p>"})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["total"] == 2
    assert data["campaign"]["status"] == "sent"
    assert data["campaign"]["success_count"] == 2
    assert sorted(m.to for m in outbox) == ["a@example.com", "b@example.com"]
    assert outbox[0].text.startswith("Hello\nReaders")

    campaigns = admin_client.get("/admin/newsletter/campaigns?status=sent").json["data"]["campaigns"]
    assert [c["subject"] for c in campaigns] == ["June issue"]
    assert admin_client.get("/admin/newsletter/campaigns?status=lost").status_code == 400


def test_schedule_validation(admin_client):
    base = {"subject": "Later", "content": "<p>Soon</p>"}
    r = admin_client.post("/admin/newsletter/schedule", json={**base, "scheduled_for": "next tuesday"})
    assert r.status_code == 400
    assert r.json["details"] == ["scheduled_for must be an ISO date-time."]

    past = (utcnow() - timedelta(hours=1)).isoformat()
    r = admin_client.post("/admin/newsletter/schedule", json={**base, "scheduled_for": past})
    assert r.json["details"] == ["scheduled_for must be in the future."]

    future = (utcnow() + timedelta(days=1)).isoformat()
    r = admin_client.post("/admin/newsletter/schedule", json={**base, "scheduled_for": future})
    assert r.status_code == 201
    assert r.json["data"]["status"] == "scheduled"


def test_scheduled_campaigns_run_when_due(app, client, admin_client, outbox):
    _subscribe(client, "a@example.com")
    outbox.clear()
    future = utcnow() + timedelta(hours=2)
    admin_client.post("/admin/newsletter/schedule", json={"subject": "Due soon", "content": "<p>x</p>", "scheduled_for": future.isoformat()})

    r = admin_client.post("/admin/newsletter/scheduled/run")
    assert r.json["data"]["sent"] == 0
    assert outbox == []

    with app.test_request_context():
        with session_scope(app) as s:
            results = run_scheduled_campaigns(s, now=future + timedelta(minutes=1))
    assert len(results) == 1
    assert results[0]["campaign"]["status"] == "sent"
    assert [m.subject for m in outbox] == ["Due soon"]

    with app.test_request_context():
        with session_scope(app) as s:
            assert run_scheduled_campaigns(s, now=future + timedelta(minutes=2)) == []


def test_campaign_claimed_by_another_run_is_not_sent_twice(app, client, admin_client, outbox, monkeypatch):
    _subscribe(client, "a@example.com")
    outbox.clear()
    due = utcnow() + timedelta(hours=1)
    for subject in ("First", "Second"):
        admin_client.post("/admin/newsletter/schedule", json={"subject": subject, "content": "<p>x</p>", "scheduled_for": due.isoformat()})
    with session_scope(app) as s:
        first_id = s.query(NewsletterCampaign.id).filter(NewsletterCampaign.subject == "First").scalar()

    active_emails = newsletter_service._active_emails

    def other_run_claims_first(s):
        with session_scope(app) as other:
            assert claim_campaign(other, first_id)
        return active_emails(s)

    monkeypatch.setattr(newsletter_service, "_active_emails", other_run_claims_first)
    with app.test_request_context():
        with session_scope(app) as s:
            results = run_scheduled_campaigns(s, now=due + timedelta(minutes=1))

    assert [r["campaign"]["subject"] for r in results] == ["Second"]
    assert [m.subject for m in outbox] == ["Second"]
    with session_scope(app) as s:
        assert not claim_campaign(s, first_id)
        assert s.get(NewsletterCampaign, first_id).status == "sending"


def test_send_in_batches_pauses_between_batches(app, outbox):
    pauses = []
    recipients = [f"r{i}@example.com" for i in range(5)]
    with app.test_request_context():
        result = send_in_batches(recipients, "Batch", "<p>Hi</p>", batch_size=2, batch_delay=1.5, sleep=pauses.append)
    assert result == {"successful": recipients, "failed": []}
    assert pauses == [1.5, 1.5]
    assert len(outbox) == 5


def test_html_to_text():
    assert html_to_text("<h1>Title</h1><p>One &amp; two</p><br/><br/><br/><p>End</p>") == "Title\nOne & two\n\nEnd"
