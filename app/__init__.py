"""
Bitácora Digital — Logbook Workflow Service
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.integrations.document_store import build_document_store
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing
from app.middleware.diagnostics import run_startup_diagnostics
from app.middleware.security_headers import init_security_headers
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.jwt_auth import init_jwt_middleware
from app.utils.errors import E

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per endpoint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiate so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Signature document store ─────────────────────────────────────────
    app.extensions["document_store"] = build_document_store(app.config)

    # ── Security headers ─────────────────────────────────────────────────
    init_security_headers(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── JWT auth middleware (sets g.current_user_id) ─────────────────────
    init_jwt_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import abort
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models                  # noqa: F401
    from app.models import logbook as _logbook_models            # noqa: F401
    from app.models import audit as _audit_models                # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.auth_bp import auth_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.log_entry_bp import log_entry_bp
    from app.blueprints.notification_bp import notification_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(log_entry_bp)
    app.register_blueprint(notification_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("create-user")
    @click.option("--email", required=True)
    @click.option("--name", "full_name", required=True)
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--role", "project_role", default="RESIDENT", show_default=True,
                  help="Project role or legacy alias (e.g. 'Interventoría').")
    @click.option("--entity", default=None, help="IDU | INTERVENTORIA | CONTRATISTA")
    @click.option("--app-role", default="editor", show_default=True, help="admin | editor | viewer")
    @click.option("--cargo", default=None)
    def create_user_cmd(email, full_name, password, project_role, entity, app_role, cargo):
        """Create a project participant who can log in and sign."""
        from app.services.user_service import UserServiceError, create_user
        try:
            user = create_user(
                email=email, full_name=full_name, password=password,
                project_role=project_role, app_role=app_role, entity=entity, cargo=cargo,
            )
        except UserServiceError as e:
            raise click.ClickException(e.message)
        click.echo(f"Created user {user.id}: {user.email} ({user.role.value})")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": E.NOT_FOUND, "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description, "code": E.VALIDATION_INVALID}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": E.RATE_LIMITED, "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s", request.path, exc_info=True)
        return {"error": "Internal server error", "code": E.INTERNAL}, 500

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
