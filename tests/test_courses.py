"""Tests for courses, enrollment and course reviews."""

from app.edify.db import session_scope
from app.edify.modules.courses.models import Enrollment
from app.edify.modules.payments.models import PaymentTransaction


def _course(admin_client, *, publish=True, **kw):
    payload = {"title": "Writing Your First Novel", "price": 0, "level": "beginner", "duration": 90}
    payload.update(kw)
    r = admin_client.post("/admin/courses", json=payload)
    assert r.status_code == 201, r.json
    course = r.json["data"]
    if publish:
        r = admin_client.put(f"/admin/courses/{course['id']}", json={"is_published": True})
        course = r.json["data"]
    return course


def test_create_course_defaults(admin_client, user_ids):
    course = _course(admin_client, publish=False, price="4500")
    assert course["is_published"] is False
    assert course["currency"] == "NGN"
    assert course["price"] == "4500.00"
    assert course["is_free"] is False
    assert course["instructor"]["id"] == user_ids["admin@example.com"]
    assert course["modules"] == []


def test_course_validation_and_permissions(admin_client, reader_client):
    r = admin_client.post("/admin/courses", json={"title": "", "price": "-1", "level": "guru", "duration": "long"})
    assert r.status_code == 400
    assert len(r.json["details"]) == 4
    assert reader_client.post("/admin/courses", json={"title": "X"}).status_code == 403


def test_unpublished_courses_hidden(client, admin_client):
    hidden = _course(admin_client, publish=False, title="Draft Course")
    shown = _course(admin_client, title="Live Course")

    r = client.get("/api/courses")
    assert [c["title"] for c in r.json["data"]["courses"]] == ["Live Course"]
    assert r.json["data"]["courses"][0]["enrollment_count"] == 0

    assert client.get(f"/api/courses/{hidden['id']}").status_code == 404
    assert client.get(f"/api/courses/{shown['id']}").status_code == 200

    r = admin_client.get("/admin/courses")
    assert r.json["data"]["pagination"]["total"] == 2


def test_module_content_locked_until_enrolled(admin_client, reader_client):
    course = _course(admin_client)
    cid = course["id"]
    r = admin_client.post(f"/admin/courses/{cid}/modules", json={"title": "Intro", "content": "Welcome!", "is_preview": True})
    assert r.status_code == 201
    assert r.json["data"]["position"] == 1
    r = admin_client.post(f"/admin/courses/{cid}/modules", json={"title": "Plotting", "content": "Secret sauce"})
    assert r.json["data"]["position"] == 2

    r = reader_client.get(f"/api/courses/{cid}")
    modules = r.json["data"]["modules"]
    assert [m["title"] for m in modules] == ["Intro", "Plotting"]
    assert modules[0]["content"] == "Welcome!"
    assert modules[1]["content"] is None
    assert modules[1]["locked"] is True
    assert r.json["data"]["is_enrolled"] is False

    reader_client.post(f"/api/courses/{cid}/enroll", json={})
    r = reader_client.get(f"/api/courses/{cid}")
    assert r.json["data"]["modules"][1]["content"] == "Secret sauce"
    assert r.json["data"]["is_enrolled"] is True
    assert r.json["data"]["enrollment"]["progress"] == 0


def test_module_update_and_delete(admin_client):
    cid = _course(admin_client)["id"]
    mid = admin_client.post(f"/admin/courses/{cid}/modules", json={"title": "One"}).json["data"]["id"]
    other_cid = _course(admin_client, title="Other")["id"]

    r = admin_client.put(f"/admin/courses/{cid}/modules/{mid}", json={"title": "Renamed", "position": 5})
    assert r.json["data"]["title"] == "Renamed"
    assert r.json["data"]["position"] == 5

    assert admin_client.put(f"/admin/courses/{other_cid}/modules/{mid}", json={"title": "X"}).status_code == 404
    assert admin_client.delete(f"/admin/courses/{cid}/modules/{mid}").status_code == 200
    assert admin_client.delete(f"/admin/courses/{cid}/modules/{mid}").status_code == 404


def test_free_enrollment_sends_welcome(reader_client, admin_client, outbox):
    cid = _course(admin_client, title="Poetry Basics")["id"]

    r = reader_client.post(f"/api/courses/{cid}/enroll", json={})
    assert r.status_code == 201
    assert r.json["data"]["payment_required"] is False
    assert r.json["data"]["enrollment"]["course_id"] == cid
    assert [m.subject for m in outbox] == ["Welcome to Poetry Basics!"]

    r = reader_client.post(f"/api/courses/{cid}/enroll", json={})
    assert r.status_code == 409


def test_paid_enrollment_completes_after_payment(app, reader_client, admin_client, gateways, outbox):
    cid = _course(admin_client, title="Editing Masterclass", price="5000")["id"]

    r = reader_client.post(f"/api/courses/{cid}/enroll", json={"payment_method": "mtn_momo"})
    assert r.status_code == 400

    r = reader_client.post(f"/api/courses/{cid}/enroll", json={"payment_method": "paystack"})
    assert r.status_code == 200
    data = r.json["data"]
    assert data["payment_required"] is True
    order = data["order"]
    reference = data["payment"]["reference"]
    assert reference == f"COURSE-{order['order_number']}"
    assert data["payment"]["authorization_url"].startswith("https://checkout.paystack.test/")
    assert order["course_id"] == cid
    assert order["total"] == "5000.00"

    # Not enrolled until the payment is verified.
    assert reader_client.put(f"/api/courses/{cid}/progress", json={"progress": 10}).status_code == 403

    gateways["paystack"].succeed(reference, "5000.00")
    r = reader_client.post("/api/payment/verify", json={"reference": reference, "provider": "paystack", "order_id": order["id"]})
    assert r.status_code == 200, r.json
    assert r.json["data"]["status"] == "paid"

    with session_scope(app) as s:
        assert s.query(Enrollment).filter(Enrollment.course_id == cid).count() == 1
        assert s.query(PaymentTransaction).filter(PaymentTransaction.reference == reference).one().status == "successful"

    subjects = [m.subject for m in outbox]
    assert "Welcome to Editing Masterclass!" in subjects
    assert f"Payment received for order {order['order_number']}" in subjects

    assert reader_client.post(f"/api/courses/{cid}/enroll", json={}).status_code == 409


def test_progress_and_completion_email_once(reader_client, admin_client, outbox):
    cid = _course(admin_client, title="Short Story Lab")["id"]
    reader_client.post(f"/api/courses/{cid}/enroll", json={})

    assert reader_client.put(f"/api/courses/{cid}/progress", json={"progress": 101}).status_code == 400
    assert reader_client.put(f"/api/courses/{cid}/progress", json={"progress": "50"}).status_code == 400

    r = reader_client.put(f"/api/courses/{cid}/progress", json={"progress": 40})
    assert r.json["message"] == "Progress updated"
    assert r.json["data"]["completed_at"] is None

    r = reader_client.put(f"/api/courses/{cid}/progress", json={"progress": 100})
    assert r.json["message"] == "Congratulations! Course completed!"
    completed_at = r.json["data"]["completed_at"]
    assert completed_at is not None

    r = reader_client.put(f"/api/courses/{cid}/progress", json={"progress": 100})
    assert r.json["data"]["completed_at"] == completed_at

    completions = [m for m in outbox if m.subject == "Congratulations! You've completed Short Story Lab"]
    assert len(completions) == 1


def test_course_reviews_and_instructor_reply(reader_client, other_client, admin_client, login, user_ids, client):
    cid = _course(admin_client)["id"]
    reader_client.post(f"/api/courses/{cid}/enroll", json={})

    r = reader_client.post(f"/api/courses/{cid}/reviews", json={"rating": 5, "comment": "Superb"})
    assert r.status_code == 201
    review_id = r.json["data"]["id"]
    assert r.json["data"]["is_verified_enrollment"] is True

    r = other_client.post(f"/api/courses/{cid}/reviews", json={"rating": 3})
    assert r.json["data"]["is_verified_enrollment"] is False
    assert reader_client.post(f"/api/courses/{cid}/reviews", json={"rating": 4}).status_code == 409

    r = client.get(f"/api/courses/{cid}/reviews")
    data = r.json["data"]
    assert data["review_count"] == 2
    assert data["average_rating"] == 4.0
    assert data["rating_distribution"] == {"1": 0, "2": 0, "3": 1, "4": 0, "5": 1}

    assert reader_client.post(f"/api/courses/{cid}/reviews/{review_id}/reply", json={"reply": "Thanks"}).status_code == 403

    # Hand the course to the author account; instructors may reply without courses.manage.
    admin_client.put(f"/admin/courses/{cid}", json={"instructor_id": user_ids["author@example.com"]})
    author_client = login("author@example.com", "author-pass-1")
    assert author_client.post(f"/api/courses/{cid}/reviews/{review_id}/reply", json={"reply": ""}).status_code == 400
    r = author_client.post(f"/api/courses/{cid}/reviews/{review_id}/reply", json={"reply": "Glad it helped!"})
    assert r.status_code == 200
    assert r.json["data"]["instructor_reply"] == "Glad it helped!"
    assert r.json["data"]["replied_at"] is not None
