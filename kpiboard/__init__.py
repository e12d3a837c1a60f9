"""
KPI Board
Flask Application Factory.

Usage:
    from kpiboard import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, send_from_directory
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from kpiboard.config import config
from kpiboard.models import db
from kpiboard.middleware.logging_config import configure_logging
from kpiboard.middleware.timing import init_request_timing
from kpiboard.middleware.rate_limiter import init_rate_limits
from kpiboard.middleware.jwt_auth import init_jwt_middleware

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
    default_limits=[],                     # no global limit - apply per-blueprint
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
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)
    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_timing(app)
    init_jwt_middleware(app)

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct and "multipart/form-data" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Models (register tables on the metadata) ─────────────────────────
    from kpiboard.models import auth as _auth_models               # noqa: F401
    from kpiboard.models import org as _org_models                 # noqa: F401
    from kpiboard.models import kpi as _kpi_models                 # noqa: F401
    from kpiboard.models import discrepancy as _discrepancy_models  # noqa: F401

    with app.app_context():
        os.makedirs(app.instance_path, exist_ok=True)
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from kpiboard.blueprints.health_bp import health_bp
    from kpiboard.blueprints.kpi_bp import kpi_bp
    from kpiboard.blueprints.kpi_header_bp import kpi_header_bp
    from kpiboard.blueprints.discrepancy_bp import discrepancy_bp
    from kpiboard.blueprints.role_bp import role_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(kpi_bp)
    app.register_blueprint(kpi_header_bp)
    app.register_blueprint(discrepancy_bp)
    app.register_blueprint(role_bp)

    # ── Stored evidence files ────────────────────────────────────────────
    @app.route(f"{app.config['EVIDENCE_URL_PREFIX'].rstrip('/')}/<path:name>")
    def evidence_file(name):
        return send_from_directory(app.config["EVIDENCE_UPLOAD_DIR"], name)

    # ── CLI ──────────────────────────────────────────────────────────────
    @app.cli.command("recompute-weights")
    @click.option("--year", default=None, help='Academic year, e.g. "2025-2026". Default: all years.')
    def recompute_weights_cmd(year):
        """Recompute KPI and deliverable weights."""
        from kpiboard.services.kpi.weights import recompute_all_weights, recompute_weights
        counts = {year: recompute_weights(year)} if year else recompute_all_weights()
        db.session.commit()
        for key, count in counts.items():
            click.echo(f"{key}: {count} KPI(s)")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logging.getLogger(__name__).error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
