"""Application factory and entry point for the webhook server and the billing CLI."""

from __future__ import annotations

import json
import logging
import os

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

from commands import billing_cli
from config import enable_sqlite_fks, load_config
from extensions import db, limiter
from routes import register_blueprints

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, email_cfg, stripe_cfg, billing_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["EMAIL_CONFIG"] = email_cfg
    app.config["STRIPE_CONFIG"] = stripe_cfg
    app.config["BILLING_CONFIG"] = billing_cfg

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        import models  # noqa: F401  (register tables before create_all)

        db.create_all()

    register_blueprints(app)
    app.cli.add_command(billing_cli)

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(404)
    def not_found(_error):
        return json.dumps({"status": "error", "message": "not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return json.dumps({"status": "error", "message": "method not allowed"}), 405

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return json.dumps({"status": "error", "message": "too many requests"}), 429

    @app.errorhandler(500)
    def server_error(_error):
        return json.dumps({"status": "error", "message": "internal error"}), 500

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
