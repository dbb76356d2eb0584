from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import click
from flask import Flask, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from settlement.config import get_config
from settlement.errors import DuplicateEvent, SettlementError
from settlement.extensions import cache, celery_init_app, migrate
from settlement.models import db, init_models

log = logging.getLogger("settlement")

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


# ============================================================
# Logging
# ============================================================

def _setup_logging(app: Flask) -> None:
    """
    One root configuration for every named logger (ledger_service, guard, ...).
    Respects LOG_LEVEL; never stacks handlers if gunicorn already configured them.
    """
    lvl = str(app.config.get("LOG_LEVEL") or "").strip().upper()
    level = getattr(logging, lvl) if lvl in _LEVELS else (logging.DEBUG if app.debug else logging.INFO)

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    app.logger.setLevel(level)


# ============================================================
# Errors
# ============================================================

def _register_error_handlers(app: Flask) -> None:

    @app.errorhandler(DuplicateEvent)
    def duplicate_event(e: DuplicateEvent):
        existing = e.existing.to_dict() if hasattr(e.existing, "to_dict") else None
        return jsonify({"ok": True, "duplicate": True, "message": e.message, "existing": existing}), 200

    @app.errorhandler(SettlementError)
    def settlement_error(e: SettlementError):
        if e.http_status >= 500:
            app.logger.error("%s on %s %s: %s", e.code, request.method, request.path, e.message)
        else:
            app.logger.info("%s on %s %s: %s", e.code, request.method, request.path, e.message)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        code = (e.name or "error").lower().replace(" ", "_")
        return jsonify({"ok": False, "error": code, "message": e.description}), e.code or 500

    @app.errorhandler(Exception)
    def server_error(e: Exception):
        app.logger.exception("Unhandled error on %s %s: %s", request.method, request.path, e)
        db.session.rollback()
        return jsonify({"ok": False, "error": "server_error", "message": "internal error"}), 500


# ============================================================
# CLI
# ============================================================

def _register_cli(app: Flask) -> None:

    @app.cli.command("create-tables")
    def cli_create_tables():
        """Create every table (local / first deploy)."""
        db.create_all()
        click.echo(f"tables ready: {', '.join(sorted(db.metadata.tables))}")

    @app.cli.command("clear-funds")
    def cli_clear_funds():
        """Run the clearance sweep (PENDING -> CLEARED for due entries)."""
        from settlement.services.ledger_service import clear_pending_funds

        click.echo(clear_pending_funds())

    @app.cli.command("reconcile")
    @click.option("--vendor", "vendor_ids", multiple=True, type=int, help="Only these vendor ids.")
    def cli_reconcile(vendor_ids):
        """Recompute wallets from the ledger and report drift."""
        from settlement.services.guard import reconcile_wallets

        report = reconcile_wallets(list(vendor_ids) or None)
        click.echo(f"checked={report['checked']} drift={len(report['drift'])}")
        for row in report["drift"]:
            click.echo(f"  vendor {row['vendor_id']}: cached={row['cached']} ledger={row['ledger']}")


# ============================================================
# Factory
# ============================================================

def create_app(overrides: Optional[Mapping[str, Any]] = None, env_name: Optional[str] = None) -> Flask:
    """
    overrides are applied before any extension is bound: the SQLAlchemy
    engine is created at init time, so a test database URI must be in place
    by then.
    """
    app = Flask(__name__)
    app.config.from_object(get_config(env_name))
    if overrides:
        app.config.update(dict(overrides))
    app.debug = bool(app.config.get("DEBUG"))

    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    _setup_logging(app)
    app.logger.info("create_app() ENV=%s DEBUG=%s", app.config.get("ENV"), app.debug)

    cache.init_app(app)
    init_models(app, auto_create_tables=bool(app.config.get("AUTO_CREATE_TABLES")))
    migrate.init_app(app, db)
    celery_init_app(app)

    from settlement.services.notifications import init_notifications

    init_notifications(app)

    from settlement.routes import register_blueprints

    register_blueprints(app)
    _register_error_handlers(app)
    _register_cli(app)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "settlement", "env": app.config.get("ENV")}

    @app.get("/ready")
    def ready():
        try:
            db.session.execute(text("SELECT 1"))
        except Exception as e:
            db.session.rollback()
            return {"ok": False, "db": "degraded", "error": f"{type(e).__name__}"[:120]}, 503
        return {"ok": True, "db": "ok"}

    return app


__all__ = ["create_app", "db"]
