import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from studiodesk.config import config_by_name
from studiodesk.extensions import db, migrate, login_manager, limiter

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"

ERROR_MESSAGES = {
    400: "Bad request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not found",
    405: "Method not allowed",
    413: "Payload too large",
    429: "Too many requests",
    500: "Internal server error",
}


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from studiodesk import models  # noqa: F401

    # --- Gemini clients (app.extensions["embedding_gateway"], ["answer_generator"]) ---
    from studiodesk.services.gemini_client import init_model_clients
    init_model_clients(app)

    # --- Request id middleware ---
    from studiodesk.middleware.request_id import (
        init_request_id_middleware,
        install_log_filter,
    )
    init_request_id_middleware(app)

    # --- Register blueprints ---
    from studiodesk.blueprints.auth import auth_bp
    from studiodesk.blueprints.admin import admin_bp
    from studiodesk.blueprints.rag import rag_bp
    from studiodesk.blueprints.subscriptions import subscriptions_bp
    from studiodesk.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(rag_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(webhooks_bp)

    # --- Error handlers (JSON everywhere) ---
    def _json_error(e):
        status = getattr(e, "code", 500) or 500
        return jsonify({"error": ERROR_MESSAGES.get(status, "Error")}), status

    for status in ERROR_MESSAGES:
        app.register_error_handler(status, _json_error)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing to load
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(
            level=app.config.get("LOG_LEVEL", "INFO"), format=LOG_FORMAT
        )
    install_log_filter()

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@studiodesk.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create the admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from studiodesk.models.user import User

        existing = User.query.filter_by(email=email).first()
        if existing:
            click.echo(f"Admin user already exists: {email}")
            return

        admin = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name="Admin",
            is_admin=True,
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Created admin user: {email}")

    @app.cli.command("backfill-subscriptions")
    @click.option("--apply", is_flag=True, help="Write links (default is a dry run).")
    @click.option("--project-id", default=None, help="Only reconcile this project.")
    def backfill_subscriptions_command(apply, project_id):
        """Link subscription projects that have no Stripe subscription id.

        Usage:
            flask backfill-subscriptions
            flask backfill-subscriptions --apply
            flask backfill-subscriptions --apply --project-id <id>
        """
        from studiodesk.services.backfill_service import backfill_subscriptions

        report = backfill_subscriptions(dry_run=not apply, project_id=project_id)
        summary = report["summary"]

        click.echo("")
        click.echo("=" * 60)
        click.echo(f"Backfill {'(dry run) ' if report['dryRun'] else ''}complete")
        click.echo("=" * 60)
        for detail in report["details"]:
            reason = detail.get("reason") or detail.get("subscriptionId") or ""
            click.echo(f"  {detail['projectId']}: {detail['action']} {reason}")
        click.echo("")
        click.echo(
            f"  Processed: {summary['processed']}  Linked: {summary['linked']}  "
            f"Skipped: {summary['skipped']}  Errors: {summary['errors']}"
        )
        click.echo("=" * 60)
