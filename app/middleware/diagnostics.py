"""
Startup diagnostics — runs once when the Flask app starts.

Checks critical dependencies and logs a summary banner.
"""

import logging
import sys

from flask import Flask

from app.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")

        if db_type == "SQLite":
            issues.append("SQLite ignores SELECT ... FOR UPDATE — concurrent writers rely on version checks only")

        # ── Table count ──────────────────────────────────────────────
        try:
            from sqlalchemy import inspect as sa_inspect
            table_count = len(sa_inspect(db.engine).get_table_names())
            if table_count == 0:
                issues.append("No tables found — run 'flask db upgrade'")
        except Exception:
            table_count = "?"

        auth_enabled = str(app.config.get("API_AUTH_ENABLED", "true")).lower() == "true"
        store = app.extensions.get("document_store")
        store_name = type(store).__name__ if store is not None else "NOT REGISTERED"
        notifications = "on" if app.config.get("LOGBOOK_NOTIFICATIONS_ENABLED", True) else "off"

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Bitácora Digital — Startup Diagnostics                      ║
╠══════════════════════════════════════════════════════════════╣
║  Python        : {py:<44s}║
║  Debug         : {str(app.debug):<44s}║
║  Database      : {f'{db_type} ({db_status})':<44s}║
║  Tables        : {str(table_count):<44s}║
║  Auth          : {'JWT only' if auth_enabled else 'JWT + X-User-Id header':<44s}║
║  Doc store     : {store_name:<44s}║
║  Notifications : {notifications:<44s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if not auth_enabled:
            issues.append("API_AUTH_ENABLED=false — callers can impersonate via X-User-Id")

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
