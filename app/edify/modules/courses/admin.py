from __future__ import annotations

from flask import Blueprint, current_app, request

from app.edify.db import db_session
from app.edify.errors import NotFound
from app.edify.modules.courses.models import Course, CourseModule
from app.edify.modules.courses.service import (
    add_module,
    course_detail,
    create_course,
    list_courses,
    update_course,
    update_module,
)
from app.edify.rbac import login_required_user, require_permission
from app.edify.utils import ok

bp = Blueprint("courses_admin", __name__)


def _get_course(s, course_id: int) -> Course:
    course = s.get(Course, course_id)
    if not course:
        raise NotFound("Course not found")
    return course


@bp.get("/courses")
@require_permission("courses.manage")
def courses_list():
    s = db_session()
    args = request.args.to_dict()
    args.setdefault("status", "all")
    return ok(list_courses(s, args, can_manage=True))


@bp.post("/courses")
@require_permission("courses.manage")
def courses_create():
    s = db_session()
    user = login_required_user()
    course = create_course(
        s,
        request.get_json(silent=True) or {},
        user,
        default_currency=current_app.config.get("DEFAULT_CURRENCY") or "NGN",
    )
    s.commit()
    return ok(course_detail(s, course, user, can_manage=True), message="Course created", status=201)


@bp.put("/courses/<int:course_id>")
@require_permission("courses.manage")
def courses_update(course_id: int):
    s = db_session()
    user = login_required_user()
    course = update_course(s, _get_course(s, course_id), request.get_json(silent=True) or {}, user)
    s.commit()
    return ok(course_detail(s, course, user, can_manage=True), message="Course updated")


@bp.post("/courses/<int:course_id>/modules")
@require_permission("courses.manage")
def modules_create(course_id: int):
    s = db_session()
    module = add_module(s, _get_course(s, course_id), request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(module.to_dict(), message="Module added", status=201)


@bp.put("/courses/<int:course_id>/modules/<int:module_id>")
@require_permission("courses.manage")
def modules_update(course_id: int, module_id: int):
    s = db_session()
    module = s.get(CourseModule, module_id)
    if module is None or module.course_id != course_id:
        raise NotFound("Module not found")
    update_module(s, module, request.get_json(silent=True) or {}, login_required_user())
    s.commit()
    return ok(module.to_dict(), message="Module updated")


@bp.delete("/courses/<int:course_id>/modules/<int:module_id>")
@require_permission("courses.manage")
def modules_delete(course_id: int, module_id: int):
    s = db_session()
    module = s.get(CourseModule, module_id)
    if module is None or module.course_id != course_id:
        raise NotFound("Module not found")
    s.delete(module)
    s.commit()
    return ok({"id": module_id}, message="Module deleted")
