import logging
import uuid

import click
from flask import Flask, request, g, jsonify
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from config import Config
from errors import ReservationError
from models import db
from routes import health_bp, slots_bp, booking_bp, coupons_bp, payments_bp, webhook_bp
from services import build_services, get_services
from utils.auth_context import load_current_actor

logger = logging.getLogger(__name__)


def create_app(config_object=Config, clock=None, notifier=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(slots_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(coupons_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Reservation services share the request-scoped session
    build_services(app, clock=clock, notifier=notifier)

    @app.before_request
    def _load_actor():
        g.correlation_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        load_current_actor()

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        if getattr(g, "correlation_id", None):
            resp.headers["X-Request-Id"] = g.correlation_id
        return resp

    @app.errorhandler(ReservationError)
    def _reservation_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def _http_error(exc):
        return jsonify(error=exc.description), exc.code

    @app.errorhandler(Exception)
    def _unhandled(exc):
        correlation_id = getattr(g, "correlation_id", None)
        logger.exception("Unhandled error (correlation_id=%s)", correlation_id)
        db.session.rollback()
        return jsonify(error="Internal server error", correlation_id=correlation_id), 500

    register_cli(app)

    return app


#-------------------------
def register_cli(app):
    @app.cli.command("generate-slots")
    @click.option("--days", default=None, type=int, help="Days ahead to generate (default SLOT_HORIZON_DAYS).")
    @click.option("--facility-id", default=None, type=int, help="Only this facility.")
    def generate_slots(days, facility_id):
        """Create missing hourly slots for every active facility (idempotent)."""
        days = days or app.config.get("SLOT_HORIZON_DAYS", 30)
        try:
            result = get_services().slot_generator.generate(days=days, facility_id=facility_id)
        except ReservationError as exc:
            raise click.ClickException(exc.message)
        click.echo(
            f"{result.slots_created} slots created across {result.facilities_processed} facilities "
            f"({result.courts_processed} courts, {result.days} days)"
        )

    @app.cli.command("expire-pending")
    @click.option("--older-than", "older_than", default=30, type=int, show_default=True,
                  help="Minutes a PENDING booking may wait for payment.")
    def expire_pending(older_than):
        """Cancel PENDING bookings whose checkout was never completed."""
        expired = get_services().reconciler.expire_stale(older_than_minutes=older_than)
        click.echo(f"{len(expired)} pending bookings expired")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
