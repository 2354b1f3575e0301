from flask import Blueprint, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Database reachability plus whether migrations have been applied."""
    try:
        with current_app.extensions["sqlalchemy_engine"].connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        current_app.logger.error("Health check: database unreachable: %s", e)
        return {"ok": False, "database": "unreachable"}, 503
    return {"ok": True, "database": "ok", "schema_ok": bool(current_app.config.get("_schema_health_ok"))}


@bp.get("/healthz")
def healthz():
    """Load balancer health check; no database access."""
    return "ok", 200
