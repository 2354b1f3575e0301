import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import inspect as sa_inspect

from app.edify.admin import bp as admin_bp
from app.edify.auth import bp as auth_bp, load_current_user
from app.edify.config import load_config
from app.edify.db import init_db, teardown_db_session
from app.edify.errors import register_error_handlers
from app.edify.modules.blog.admin import bp as blog_admin_bp
from app.edify.modules.blog.routes import bp as blog_bp
from app.edify.modules.cart.routes import bp as cart_bp
from app.edify.modules.catalog.admin import bp as catalog_admin_bp
from app.edify.modules.catalog.routes import bp as catalog_bp
from app.edify.modules.coupons.admin import bp as coupons_admin_bp
from app.edify.modules.coupons.routes import bp as coupons_bp
from app.edify.modules.courses.admin import bp as courses_admin_bp
from app.edify.modules.courses.routes import bp as courses_bp
from app.edify.modules.newsletter.admin import bp as newsletter_admin_bp
from app.edify.modules.newsletter.routes import CSRF_EXEMPT_ENDPOINTS as NEWSLETTER_CSRF_EXEMPT, bp as newsletter_bp
from app.edify.modules.orders.routes import bp as orders_bp
from app.edify.modules.payments.routes import CSRF_EXEMPT_ENDPOINTS as PAYMENTS_CSRF_EXEMPT, bp as payments_bp
from app.edify.modules.preorders.admin import bp as preorders_admin_bp
from app.edify.modules.preorders.routes import bp as preorders_bp
from app.edify.modules.seo.admin import bp as seo_admin_bp
from app.edify.modules.seo.routes import CSRF_EXEMPT_ENDPOINTS as SEO_CSRF_EXEMPT, bp as seo_bp, root_bp as seo_root_bp
from app.edify.routes import bp as routes_bp

API_BLUEPRINTS = (
    catalog_bp,
    cart_bp,
    orders_bp,
    coupons_bp,
    preorders_bp,
    payments_bp,
    courses_bp,
    newsletter_bp,
    blog_bp,
    seo_bp,
)
ADMIN_BLUEPRINTS = (
    admin_bp,
    catalog_admin_bp,
    coupons_admin_bp,
    preorders_admin_bp,
    courses_admin_bp,
    newsletter_admin_bp,
    blog_admin_bp,
    seo_admin_bp,
)
CSRF_EXEMPT_ENDPOINTS = PAYMENTS_CSRF_EXEMPT | NEWSLETTER_CSRF_EXEMPT | SEO_CSRF_EXEMPT

# Tables every deploy must have; a missing one means `alembic upgrade head` was skipped.
REQUIRED_TABLES = ("users", "books", "orders", "payment_transactions", "courses", "newsletter_subscribers", "blog_posts")

_UNGUARDED_PREFIXES = ("/health", "/healthz", "/robots.txt", "/sitemap.xml")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=7)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.edify.security import validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            endpoint = request.endpoint or ""
            # Login/register start the session; webhooks authenticate by signature.
            if endpoint.startswith("auth.") or endpoint in CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                app.logger.warning("CSRF rejected endpoint=%s", endpoint)
                return jsonify({"success": False, "error": "CSRF token missing or invalid."}), 400
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        for key in ("PAYSTACK_SECRET_KEY", "FLUTTERWAVE_SECRET_KEY"):
            if not app.config.get(key):
                app.logger.warning("%s is not set; that payment provider will be unavailable.", key)

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):

            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(seo_root_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    for bp in API_BLUEPRINTS:
        app.register_blueprint(bp, url_prefix="/api")
    for bp in ADMIN_BLUEPRINTS:
        app.register_blueprint(bp, url_prefix="/admin")

    register_error_handlers(app)

    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema drift detection: admin routes answer 503 until migrations have run.
    app.config.setdefault("_schema_health_ok", False)

    def _run_schema_health_check() -> list[str]:
        engine = app.extensions["sqlalchemy_engine"]
        insp = sa_inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        app.config["_schema_health_ok"] = not missing
        return missing

    missing = _run_schema_health_check()
    if missing:
        app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok") or not request.path.startswith("/admin"):
            return None
        missing = _run_schema_health_check()
        if missing:
            return jsonify({"success": False, "error": "Database schema out of date", "details": missing}), 503
        return None

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
