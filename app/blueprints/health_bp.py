"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — minimal status
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database and collaborator status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "Bitácora Digital"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    store = current_app.extensions.get("document_store")
    checks["document_store"] = {
        "status": "ok" if store is not None else "missing",
        "backend": type(store).__name__ if store is not None else None,
    }
    if store is None:
        overall = False

    checks["app"] = {
        "name": "Bitácora Digital",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "notifications": bool(current_app.config.get("LOGBOOK_NOTIFICATIONS_ENABLED", True)),
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
