import os
import logging

import click
from flask import Flask, jsonify

from paybridge.config import config_by_name
from paybridge.extensions import db, migrate, limiter


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
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from paybridge import models  # noqa: F401

    # Billing engine, built lazily by services.engine.get_engine().
    app.extensions["paybridge"] = None

    # --- Register blueprints ---
    from paybridge.blueprints.webhooks import webhooks_bp
    from paybridge.blueprints.admin_api import admin_api_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_api_bp)

    # --- Error handlers ---
    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": "Bad request"}), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """JSON-only API: no sniffing, no framing, no caching."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register billing CLI commands with the Flask app."""

    @app.cli.command("run-billing")
    @click.option("--now", "now_iso", default=None, help="Run as if at this ISO-8601 time (UTC).")
    def run_billing(now_iso):
        """Charge every due recurring schedule once, then exit.

        Meant for cron:
            */15 * * * *  flask run-billing
        """
        from paybridge.services.billing_jobs import run_billing_cycle
        from paybridge.timeutil import parse_iso

        report = run_billing_cycle(now=parse_iso(now_iso) if now_iso else None)
        _echo_report(report)

    @app.cli.command("billing-worker")
    @click.option("--interval", default=300, show_default=True, help="Seconds between cycles.")
    @click.option("--iterations", default=0, help="Stop after N cycles (0 = run forever).")
    def billing_worker(interval, iterations):
        """Run billing cycles and webhook retries on a timer.

        Usage:
            flask billing-worker --interval 60
        """
        from paybridge.services.billing_jobs import run_worker

        run_worker(interval=interval, iterations=iterations, echo=click.echo)

    @app.cli.command("retry-webhooks")
    def retry_webhooks():
        """Re-process failed webhook deliveries whose backoff has elapsed."""
        from paybridge.services.billing_jobs import retry_failed_webhooks

        results = retry_failed_webhooks()
        click.echo(f"Retried {len(results)} webhook event(s)")
        for result in results:
            click.echo(f"  {result.event.id}  {result.event.event_type:<28} {result.outcome}")

    @app.cli.command("billing-health")
    def billing_health():
        """Print the recurring schedule health summary."""
        from paybridge.services import reporting

        rows = reporting.recurring_health(db.session)
        if not rows:
            click.echo("No recurring schedules.")
            return

        click.echo(f"{'cadence':<10} {'status':<10} {'count':>6} {'total':>12} {'avg fails':>10} {'due':>5}")
        click.echo("-" * 58)
        for row in rows:
            click.echo(
                f"{row['cadence']:<10} {row['status']:<10} {row['count']:>6} "
                f"{row['total_amount']:>12} {row['avg_failed_attempts']:>10} {row['due_for_billing']:>5}"
            )


def _echo_report(report):
    click.echo("")
    click.echo("=" * 60)
    click.echo(f"Billing cycle at {report.now.isoformat()}")
    click.echo("=" * 60)
    click.echo(f"  Claimed:            {report.claimed}")
    click.echo(f"  Skipped (claimed):  {report.skipped}")
    click.echo(f"  Approved:           {report.approved}")
    click.echo(f"  Declined:           {report.declined}")
    click.echo(f"  Failed:             {report.failed}")
    click.echo(f"  Pending (webhook):  {report.pending}")
    click.echo(f"  Retries scheduled:  {report.retries_scheduled}")
    click.echo(f"  Retried:            {report.retried}")
    click.echo(f"  Unconfirmed:        {report.unconfirmed}")
    click.echo(f"  No payment method:  {report.no_payment_method}")
    click.echo(f"  Schedules failed:   {report.schedules_failed}")
    for error in report.errors:
        click.echo(f"  ERROR: {error}")
    click.echo("=" * 60)
