import os
import json
from pathlib import Path
import logging
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, current_app
from flask_login import UserMixin

from .extensions import db, migrate, login_manager
from .config import Config

# Blueprints
from .blueprints.errors import errors_bp
from .blueprints.cart import cart_bp
from .blueprints.payments import payments_bp
from .blueprints.webhooks import webhooks_bp
from .blueprints.assignments import assignments_bp


class Principal(UserMixin):
    """The caller, as identified by the auth service in front of us."""

    def __init__(self, user_id: str):
        self.id = user_id


# Optional: Sentry
def _init_sentry(app):
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        environment=os.getenv("ENV", "development"),
        release=app.config.get("APP_VERSION") or os.getenv("GIT_COMMIT", None),
        send_default_pii=False,
    )
    app.logger.info("Sentry initialized.")


def _init_logging(app):
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    log_dir = Path(app.config.get("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / app.config.get("LOG_FILENAME", "taskmarket.log")

    # Formatter: text or JSON
    if app.config.get("LOG_JSON", False):
        import json_log_formatter
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(module)s: %(message)s")

    # Rotating file handler (5MB x 5)
    file_handler = RotatingFileHandler(
        log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    # Stream to stdout as well (docker / heroku)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)

    # app.logger is the "taskmarket" logger, parent of every service module logger.
    # Drop handlers from a previous create_app() in the same process (tests).
    app.logger.setLevel(level)
    for handler in list(app.logger.handlers):
        if isinstance(handler, (RotatingFileHandler, logging.StreamHandler)):
            app.logger.removeHandler(handler)
            handler.close()
    app.logger.addHandler(file_handler)
    app.logger.addHandler(stream_handler)

    app.logger.info("Logging initialized.")


def _register_cli(app):
    @app.cli.command("payments-summary")
    @click.option("--latest", default=6, show_default=True, help="Number of recent payments.")
    def payments_summary(latest):
        """Print the overall payment report as JSON."""
        from .services.payment_ledger import payment_summary
        click.echo(json.dumps(payment_summary(latest=latest), indent=2))

    @app.cli.command("seed-statuses")
    def seed_statuses_cmd():
        """Create the configured assignment statuses."""
        from .services.assignment_status import seed_statuses
        for status in seed_statuses():
            click.echo(f"{status.order:>2}  {status.name}")


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    app.config.from_pyfile("config.py", silent=True)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Identity comes from the auth service as an opaque user id header
    @login_manager.request_loader
    def load_principal(req):
        user_id = (req.headers.get(current_app.config.get("USER_ID_HEADER", "X-User-Id")) or "").strip()
        return Principal(user_id) if user_id else None

    # Logging must come before blueprints so errors during register are captured
    _init_logging(app)
    _init_sentry(app)

    # Blueprints
    app.register_blueprint(errors_bp)  # error handlers
    app.register_blueprint(cart_bp, url_prefix="/cart")
    app.register_blueprint(payments_bp, url_prefix="/payments")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(assignments_bp, url_prefix="/task-assignments")
    _register_cli(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
