from __future__ import annotations

from flask import Blueprint, request

from app.edify.db import db_session
from app.edify.modules.courses.service import (
    course_detail,
    create_course_review,
    enroll,
    get_visible_course,
    list_course_reviews,
    list_courses,
    reply_to_review,
    update_progress,
)
from app.edify.rbac import current_user, login_required_user, require_login, user_has_permission
from app.edify.utils import clean_str, ok

bp = Blueprint("courses", __name__)


def _can_manage() -> bool:
    return user_has_permission(current_user(), "courses.manage")


@bp.get("/courses")
def courses_list():
    s = db_session()
    return ok(list_courses(s, request.args, can_manage=_can_manage()))


@bp.get("/courses/<int:course_id>")
def courses_detail(course_id: int):
    s = db_session()
    can_manage = _can_manage()
    course = get_visible_course(s, course_id, can_manage=can_manage)
    return ok(course_detail(s, course, current_user(), can_manage=can_manage))


@bp.post("/courses/<int:course_id>/enroll")
@require_login
def courses_enroll(course_id: int):
    s = db_session()
    user = login_required_user()
    payload = request.get_json(silent=True) or {}
    course = get_visible_course(s, course_id, can_manage=_can_manage())
    result = enroll(
        s,
        course,
        user,
        payment_method=clean_str(payload.get("payment_method")),
        redirect_url=clean_str(payload.get("redirect_url")),
    )
    s.commit()
    if result["payment_required"]:
        return ok(result, message="Payment initialized. Complete payment to enroll.")
    return ok(result, message="Successfully enrolled in free course", status=201)


@bp.put("/courses/<int:course_id>/progress")
@require_login
def courses_progress(course_id: int):
    s = db_session()
    user = login_required_user()
    course = get_visible_course(s, course_id, can_manage=True)
    enrollment = update_progress(s, course, user, (request.get_json(silent=True) or {}).get("progress"))
    s.commit()
    message = "Congratulations! Course completed!" if enrollment.progress == 100 else "Progress updated"
    return ok(enrollment.to_dict(), message=message)


@bp.get("/courses/<int:course_id>/reviews")
def course_reviews_list(course_id: int):
    s = db_session()
    course = get_visible_course(s, course_id, can_manage=_can_manage())
    return ok(list_course_reviews(s, course, request.args))


@bp.post("/courses/<int:course_id>/reviews")
@require_login
def course_reviews_create(course_id: int):
    s = db_session()
    course = get_visible_course(s, course_id, can_manage=_can_manage())
    review = create_course_review(s, course, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(review.to_dict(), message="Review submitted", status=201)


@bp.post("/courses/<int:course_id>/reviews/<int:review_id>/reply")
@require_login
def course_reviews_reply(course_id: int, review_id: int):
    s = db_session()
    can_manage = _can_manage()
    course = get_visible_course(s, course_id, can_manage=can_manage)
    review = reply_to_review(
        s,
        course,
        review_id,
        (request.get_json(silent=True) or {}).get("reply"),
        login_required_user(),
        can_manage=can_manage,
    )
    s.commit()
    return ok(review.to_dict(), message="Reply posted")
