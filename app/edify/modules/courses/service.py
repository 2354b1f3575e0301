from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.edify.audit import record_event
from app.edify.emails import send_course_completion, send_enrollment_welcome
from app.edify.errors import ApiError, Conflict, Forbidden, NotFound, ValidationFailed, raise_if_errors
from app.edify.modules.catalog.service import validate_review_payload
from app.edify.modules.courses.models import COURSE_LEVELS, Course, CourseModule, CourseReview, Enrollment
from app.edify.utils import clean_str, page_args, paginate, slugify, to_money, unique_slug, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.edify.models import User

logger = logging.getLogger(__name__)

ENROLL_PAYMENT_METHODS = ("paystack", "flutterwave")


# ---------- Courses ----------
def validate_course_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            errors.append("Title is required.")
        elif len(title) > 255:
            errors.append("Title too long.")
    if not partial or "price" in payload:
        try:
            if to_money(payload.get("price", 0)) < 0:
                errors.append("Price must be zero or positive.")
        except ValueError:
            errors.append("Price must be a number.")
    level = payload.get("level")
    if level is not None and level not in COURSE_LEVELS:
        errors.append(f"Invalid level. Must be one of: {', '.join(COURSE_LEVELS)}")
    duration = payload.get("duration")
    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, int) or duration < 0):
        errors.append("Duration must be a non-negative number of minutes.")
    return errors


def enrollment_counts(s: "Session", course_ids: list[int]) -> dict[int, int]:
    if not course_ids:
        return {}
    rows = (
        s.query(Enrollment.course_id, func.count(Enrollment.id))
        .filter(Enrollment.course_id.in_(course_ids))
        .group_by(Enrollment.course_id)
        .all()
    )
    return {cid: int(cnt) for cid, cnt in rows}


def course_rating_stats(s: "Session", course_ids: list[int]) -> dict[int, tuple[float, int]]:
    if not course_ids:
        return {}
    rows = (
        s.query(CourseReview.course_id, func.avg(CourseReview.rating), func.count(CourseReview.id))
        .filter(CourseReview.course_id.in_(course_ids), CourseReview.is_published.is_(True))
        .group_by(CourseReview.course_id)
        .all()
    )
    return {cid: (round(float(avg or 0), 2), int(cnt)) for cid, avg, cnt in rows}


def list_courses(s: "Session", args, *, can_manage: bool) -> dict:
    page, limit = page_args(args, default_limit=12)
    q = s.query(Course)
    if not (can_manage and (args.get("status") or "") == "all"):
        q = q.filter(Course.is_published.is_(True))

    level = clean_str(args.get("level"))
    if level:
        q = q.filter(Course.level == level)
    category = clean_str(args.get("category"))
    if category:
        q = q.filter(func.lower(Course.category) == category.lower())
    search = clean_str(args.get("search"))
    if search:
        like = f"%{search.lower()}%"
        q = q.filter(or_(func.lower(Course.title).like(like), func.lower(Course.description).like(like)))

    q = q.order_by(Course.created_at.desc(), Course.id.desc())
    courses, pagination = paginate(q, page, limit)
    ids = [c.id for c in courses]
    counts = enrollment_counts(s, ids)
    ratings = course_rating_stats(s, ids)
    items = []
    for c in courses:
        avg, cnt = ratings.get(c.id, (0.0, 0))
        items.append(c.to_dict(enrollment_count=counts.get(c.id, 0), average_rating=avg, review_count=cnt))
    return {"courses": items, "pagination": pagination}


def get_visible_course(s: "Session", course_id: int, *, can_manage: bool) -> Course:
    course = s.get(Course, course_id)
    if course is None or (not course.is_published and not can_manage):
        raise NotFound("Course not found")
    return course


def get_enrollment(s: "Session", user_id: int, course_id: int) -> Enrollment | None:
    return (
        s.query(Enrollment)
        .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        .one_or_none()
    )


def course_detail(s: "Session", course: Course, user: "User | None", *, can_manage: bool) -> dict:
    enrollment = get_enrollment(s, user.id, course.id) if user else None
    unlocked = can_manage or enrollment is not None
    avg, cnt = course_rating_stats(s, [course.id]).get(course.id, (0.0, 0))
    data = course.to_dict(
        enrollment_count=enrollment_counts(s, [course.id]).get(course.id, 0),
        average_rating=avg,
        review_count=cnt,
    )
    data["modules"] = [m.to_dict(include_content=unlocked) for m in course.modules]
    data["is_enrolled"] = enrollment is not None
    data["enrollment"] = enrollment.to_dict() if enrollment else None
    return data


def _apply_course_fields(course: Course, payload: dict) -> dict:
    changes: dict = {}

    def _set(attr: str, value) -> None:
        old = getattr(course, attr)
        if old != value:
            changes[attr] = {"old": str(old) if old is not None else None, "new": str(value) if value is not None else None}
            setattr(course, attr, value)

    for attr in ("title", "description", "thumbnail_image", "level", "category"):
        if attr in payload:
            _set(attr, clean_str(payload.get(attr)))
    if "price" in payload:
        _set("price", to_money(payload["price"]))
    if "currency" in payload and clean_str(payload.get("currency")):
        _set("currency", payload["currency"].strip().upper()[:3])
    if "duration" in payload:
        _set("duration", payload.get("duration"))
    if "is_published" in payload:
        _set("is_published", bool(payload.get("is_published")))
    if "instructor_id" in payload:
        _set("instructor_id", payload.get("instructor_id") or None)
    return changes


def create_course(s: "Session", payload: dict, user: "User", *, default_currency: str = "NGN") -> Course:
    raise_if_errors(validate_course_payload(payload))
    now = utcnow()
    course = Course(
        title=clean_str(payload["title"]),
        slug=unique_slug(s, Course, clean_str(payload.get("slug")) or payload["title"]),
        currency=default_currency,
        instructor_id=user.id,
        is_published=False,
        created_at=now,
        updated_at=now,
    )
    _apply_course_fields(course, {k: v for k, v in payload.items() if k not in ("title", "slug")})
    s.add(course)
    s.flush()
    record_event(s, actor=user, action="course.create", entity_type="Course", entity_id=str(course.id), metadata={"title": course.title})
    return course


def update_course(s: "Session", course: Course, payload: dict, user: "User") -> Course:
    raise_if_errors(validate_course_payload(payload, partial=True))
    changes = _apply_course_fields(course, payload)
    if clean_str(payload.get("slug")):
        new_slug = slugify(payload["slug"])
        if new_slug != course.slug:
            course.slug = unique_slug(s, Course, new_slug, exclude_id=course.id)
            changes["slug"] = course.slug
    if changes:
        course.updated_at = utcnow()
        record_event(s, actor=user, action="course.update", entity_type="Course", entity_id=str(course.id), metadata={"changes": changes})
    return course


# ---------- Modules ----------
def validate_module_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    if not partial or "title" in payload:
        if not clean_str(payload.get("title")):
            errors.append("Module title is required.")
    position = payload.get("position")
    if position is not None and (isinstance(position, bool) or not isinstance(position, int) or position < 0):
        errors.append("Position must be a non-negative integer.")
    return errors


def add_module(s: "Session", course: Course, payload: dict, user: "User") -> CourseModule:
    raise_if_errors(validate_module_payload(payload))
    position = payload.get("position")
    if position is None:
        position = max((m.position for m in course.modules), default=0) + 1
    module = CourseModule(
        course_id=course.id,
        title=clean_str(payload["title"]),
        content=payload.get("content"),
        video_url=clean_str(payload.get("video_url")),
        duration=payload.get("duration"),
        position=position,
        is_preview=bool(payload.get("is_preview")),
        created_at=utcnow(),
    )
    course.modules.append(module)
    s.flush()
    record_event(s, actor=user, action="course.module_add", entity_type="Course", entity_id=str(course.id), metadata={"module_id": module.id})
    return module


def update_module(s: "Session", module: CourseModule, payload: dict, user: "User") -> CourseModule:
    raise_if_errors(validate_module_payload(payload, partial=True))
    if "title" in payload:
        module.title = clean_str(payload["title"])
    if "content" in payload:
        module.content = payload.get("content")
    if "video_url" in payload:
        module.video_url = clean_str(payload.get("video_url"))
    for attr in ("duration", "position"):
        if payload.get(attr) is not None:
            setattr(module, attr, payload[attr])
    if "is_preview" in payload:
        module.is_preview = bool(payload.get("is_preview"))
    record_event(s, actor=user, action="course.module_update", entity_type="Course", entity_id=str(module.course_id), metadata={"module_id": module.id})
    return module


# ---------- Enrollment ----------
def ensure_enrollment(s: "Session", user: "User", course_id: int, *, notify: bool = True) -> Enrollment:
    """Idempotent: returns the existing enrollment or creates one (and sends the welcome email)."""
    enrollment = get_enrollment(s, user.id, course_id)
    if enrollment is not None:
        return enrollment
    now = utcnow()
    enrollment = Enrollment(user_id=user.id, course_id=course_id, progress=0, enrolled_at=now, updated_at=now)
    s.add(enrollment)
    s.flush()
    record_event(s, actor=user, action="course.enroll", entity_type="Course", entity_id=str(course_id))
    logger.info("Enrollment created user=%s course=%s", user.id, course_id)
    if notify:
        course = s.get(Course, course_id)
        send_enrollment_welcome(user.email, user.display_name, course.title if course else "your course", course_id)
    return enrollment


def enroll(
    s: "Session",
    course: Course,
    user: "User",
    *,
    payment_method: str | None = None,
    redirect_url: str | None = None,
) -> dict[str, Any]:
    if not course.is_published:
        raise ApiError("Course is not available for enrollment")
    if get_enrollment(s, user.id, course.id) is not None:
        raise Conflict("Already enrolled in this course")

    if course.is_free:
        enrollment = ensure_enrollment(s, user, course.id)
        return {"enrollment": enrollment.to_dict(), "payment_required": False}

    payment_method = payment_method or "paystack"
    if payment_method not in ENROLL_PAYMENT_METHODS:
        raise ValidationFailed([f"payment_method must be one of: {', '.join(ENROLL_PAYMENT_METHODS)}"])

    from app.edify.modules.orders.service import create_course_order
    from app.edify.modules.payments.service import initialize_payment

    order = create_course_order(s, user, course, payment_method=payment_method, currency=course.currency)
    payment = initialize_payment(s, order, user, provider=payment_method, callback_url=redirect_url)
    return {"order": order.to_dict(), "payment": payment, "payment_required": True}


def update_progress(s: "Session", course: Course, user: "User", progress: Any) -> Enrollment:
    if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
        raise ValidationFailed(["Progress must be an integer between 0 and 100."])
    enrollment = get_enrollment(s, user.id, course.id)
    if enrollment is None:
        raise Forbidden("Not enrolled in this course")
    newly_completed = progress == 100 and enrollment.completed_at is None
    enrollment.progress = progress
    enrollment.updated_at = utcnow()
    if newly_completed:
        enrollment.completed_at = enrollment.updated_at
        record_event(s, actor=user, action="course.complete", entity_type="Course", entity_id=str(course.id))
        send_course_completion(user.email, user.display_name, course.title)
    return enrollment


# ---------- Reviews ----------
def create_course_review(s: "Session", course: Course, payload: dict, user: "User") -> CourseReview:
    raise_if_errors(validate_review_payload(payload))
    existing = (
        s.query(CourseReview).filter(CourseReview.course_id == course.id, CourseReview.user_id == user.id).one_or_none()
    )
    if existing:
        raise Conflict("You have already reviewed this course")
    now = utcnow()
    review = CourseReview(
        course_id=course.id,
        user_id=user.id,
        rating=int(payload["rating"]),
        comment=clean_str(payload.get("comment")),
        is_verified_enrollment=get_enrollment(s, user.id, course.id) is not None,
        is_published=True,
        created_at=now,
        updated_at=now,
    )
    review.user = user
    s.add(review)
    s.flush()
    return review


def list_course_reviews(s: "Session", course: Course, args) -> dict:
    page, limit = page_args(args, default_limit=10, max_limit=50)
    base = s.query(CourseReview).filter(CourseReview.course_id == course.id, CourseReview.is_published.is_(True))
    reviews, pagination = paginate(base.order_by(CourseReview.created_at.desc(), CourseReview.id.desc()), page, limit)

    rows = (
        s.query(CourseReview.rating, func.count(CourseReview.id))
        .filter(CourseReview.course_id == course.id, CourseReview.is_published.is_(True))
        .group_by(CourseReview.rating)
        .all()
    )
    distribution = {str(star): 0 for star in range(1, 6)}
    total = 0
    weighted = 0
    for rating, cnt in rows:
        distribution[str(rating)] = int(cnt)
        total += int(cnt)
        weighted += int(rating) * int(cnt)
    return {
        "reviews": [r.to_dict() for r in reviews],
        "average_rating": round(weighted / total, 2) if total else 0.0,
        "review_count": total,
        "rating_distribution": distribution,
        "pagination": pagination,
    }


def reply_to_review(s: "Session", course: Course, review_id: int, reply: Any, user: "User", *, can_manage: bool) -> CourseReview:
    if course.instructor_id != user.id and not can_manage:
        raise Forbidden("Only the course instructor can reply to reviews")
    review = s.get(CourseReview, review_id)
    if review is None or review.course_id != course.id:
        raise NotFound("Review not found")
    text = clean_str(reply)
    if not text:
        raise ValidationFailed(["Reply is required."])
    if len(text) > 2000:
        raise ValidationFailed(["Reply too long (max 2000 characters)."])
    review.instructor_reply = text
    review.replied_at = utcnow()
    review.updated_at = review.replied_at
    record_event(s, actor=user, action="course.review_reply", entity_type="CourseReview", entity_id=str(review.id))
    return review
