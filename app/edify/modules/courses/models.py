from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.edify.models import Base, User
from app.edify.utils import iso, money_str, utcnow

COURSE_LEVELS = ("beginner", "intermediate", "advanced")


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    thumbnail_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minutes
    level: Mapped[str | None] = mapped_column(String(50), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    instructor: Mapped[User | None] = relationship("User", lazy="joined")
    modules: Mapped[list["CourseModule"]] = relationship(
        "CourseModule",
        back_populates="course",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CourseModule.position",
    )

    @property
    def is_free(self) -> bool:
        return (self.price or Decimal("0")) <= 0

    def to_dict(self, *, enrollment_count: int | None = None, average_rating: float | None = None, review_count: int | None = None) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "description": self.description,
            "price": money_str(self.price),
            "currency": self.currency,
            "is_free": self.is_free,
            "thumbnail_image": self.thumbnail_image,
            "instructor": (
                {"id": self.instructor.id, "name": self.instructor.display_name} if self.instructor else None
            ),
            "is_published": self.is_published,
            "duration": self.duration,
            "level": self.level,
            "category": self.category,
            "module_count": len(self.modules),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if enrollment_count is not None:
            d["enrollment_count"] = enrollment_count
        if average_rating is not None:
            d["average_rating"] = average_rating
            d["review_count"] = review_count or 0
        return d


class CourseModule(Base):
    __tablename__ = "course_modules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_preview: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    course: Mapped[Course] = relationship("Course", back_populates="modules")

    def to_dict(self, *, include_content: bool = True) -> dict:
        unlocked = include_content or self.is_preview
        return {
            "id": self.id,
            "course_id": self.course_id,
            "title": self.title,
            "content": self.content if unlocked else None,
            "video_url": self.video_url if unlocked else None,
            "duration": self.duration,
            "position": self.position,
            "is_preview": self.is_preview,
            "locked": not unlocked,
        }


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_enrollments_progress"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    course: Mapped[Course] = relationship("Course", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "progress": self.progress,
            "completed_at": iso(self.completed_at),
            "enrolled_at": iso(self.enrolled_at),
        }


class CourseReview(Base):
    __tablename__ = "course_reviews"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_course_reviews_user_course"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_course_reviews_rating"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_verified_enrollment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    instructor_reply: Mapped[str | None] = mapped_column(Text, nullable=True)
    replied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "course_id": self.course_id,
            "user": {"id": self.user_id, "name": self.user.display_name if self.user else None},
            "rating": self.rating,
            "comment": self.comment,
            "is_verified_enrollment": self.is_verified_enrollment,
            "instructor_reply": self.instructor_reply,
            "replied_at": iso(self.replied_at),
            "created_at": iso(self.created_at),
        }
