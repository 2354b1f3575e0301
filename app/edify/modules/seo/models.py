from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.edify.models import Base
from app.edify.utils import iso, utcnow

CHANGE_FREQUENCIES = ("always", "hourly", "daily", "weekly", "monthly", "yearly", "never")
OG_TYPES = ("website", "article", "book", "profile")
TWITTER_CARDS = ("summary", "summary_large_image", "app", "player")
REDIRECT_STATUS_CODES = (301, 302)


class SeoSetting(Base):
    __tablename__ = "seo_settings"
    __table_args__ = (UniqueConstraint("page_type", "page_slug", name="uq_seo_settings_page"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    page_type: Mapped[str] = mapped_column(String(50), nullable=False)
    page_slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    keywords: Mapped[list | None] = mapped_column(JSON, nullable=True)
    canonical_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    og_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    og_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    og_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    og_type: Mapped[str] = mapped_column(String(32), nullable=False, default="website")
    twitter_card: Mapped[str] = mapped_column(String(32), nullable=False, default="summary_large_image")
    twitter_site: Mapped[str | None] = mapped_column(String(100), nullable=True)
    twitter_creator: Mapped[str | None] = mapped_column(String(100), nullable=True)
    robots_index: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    robots_follow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    structured_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[Decimal] = mapped_column(Numeric(2, 1), nullable=False, default=Decimal("0.5"))
    change_freq: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "page_type": self.page_type,
            "page_slug": self.page_slug,
            "title": self.title,
            "description": self.description,
            "keywords": list(self.keywords or []),
            "canonical_url": self.canonical_url,
            "og_title": self.og_title,
            "og_description": self.og_description,
            "og_image": self.og_image,
            "og_type": self.og_type,
            "twitter_card": self.twitter_card,
            "twitter_site": self.twitter_site,
            "twitter_creator": self.twitter_creator,
            "robots_index": self.robots_index,
            "robots_follow": self.robots_follow,
            "structured_data": self.structured_data,
            "priority": float(self.priority),
            "change_freq": self.change_freq,
            "is_active": self.is_active,
            "updated_at": iso(self.updated_at),
        }


class SeoRedirect(Base):
    __tablename__ = "seo_redirects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_url: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    to_url: Mapped[str] = mapped_column(String(512), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False, default=301)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_url": self.from_url,
            "to_url": self.to_url,
            "status_code": self.status_code,
            "hit_count": self.hit_count,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
        }


class SeoPageView(Base):
    __tablename__ = "seo_page_views"
    __table_args__ = (Index("idx_seo_page_views_url_created", "page_url", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    page_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    page_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    referrer: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    time_on_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds
    scroll_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # percent
    utm_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "page_url": self.page_url,
            "page_title": self.page_title,
            "referrer": self.referrer,
            "device_type": self.device_type,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "time_on_page": self.time_on_page,
            "scroll_depth": self.scroll_depth,
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
            "created_at": iso(self.created_at),
        }


class SitemapEntry(Base):
    __tablename__ = "sitemap_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    lastmod: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    changefreq: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    priority: Mapped[Decimal] = mapped_column(Numeric(2, 1), nullable=False, default=Decimal("0.5"))
    page_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "lastmod": iso(self.lastmod),
            "changefreq": self.changefreq,
            "priority": float(self.priority),
            "page_type": self.page_type,
        }
