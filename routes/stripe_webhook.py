import json
import logging

import stripe
from flask import Blueprint, current_app, request, jsonify

from services import get_services
from services.checkout import BOOKING_PAYMENT
from services.payment_reconciler import (
    PAYMENT_FAILED_EVENT,
    PAYMENT_SESSION_EXPIRED,
    PAYMENT_SUCCEEDED,
    PaymentEvent,
)

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


def _booking_id(metadata):
    raw = (metadata or {}).get("booking_id")
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


def to_payment_event(event: dict):
    """Maps a verified Stripe event onto a reconciler event, or None to ignore it."""
    event_type = event.get("type")
    event_id = event.get("id")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type in ("checkout.session.completed", "checkout.session.expired"):
        if metadata.get("type") and metadata.get("type") != BOOKING_PAYMENT:
            return None
        if event_type == "checkout.session.completed":
            # async payment methods complete the session before funds arrive
            if obj.get("payment_status") not in ("paid", "no_payment_required"):
                return None
            return PaymentEvent(
                kind=PAYMENT_SUCCEEDED,
                booking_id=_booking_id(metadata),
                gateway_reference=obj.get("payment_intent"),
                transaction_id=obj.get("id"),
                event_id=event_id,
            )
        return PaymentEvent(
            kind=PAYMENT_SESSION_EXPIRED,
            booking_id=_booking_id(metadata),
            transaction_id=obj.get("id"),
            event_id=event_id,
        )

    if event_type == "payment_intent.payment_failed":
        last_error = obj.get("last_payment_error") or {}
        return PaymentEvent(
            kind=PAYMENT_FAILED_EVENT,
            booking_id=_booking_id(metadata),
            gateway_reference=obj.get("id"),
            failure_reason=last_error.get("message") or "Payment failed",
            event_id=event_id,
        )

    return None


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.get_data()

    if not endpoint_secret:
        return jsonify(error="Webhook secret not configured"), 500
    if not sig_header:
        return jsonify(error="Missing stripe-signature header"), 400

    try:
        stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        logger.warning("Stripe webhook signature verification failed")
        return jsonify(error="Invalid webhook signature"), 400

    event = json.loads(payload)
    payment_event = to_payment_event(event)
    if payment_event is None:
        logger.info("Unhandled webhook event type %s", event.get("type"))
        return jsonify(received=True), 200

    # RetryableError propagates as 503 so Stripe redelivers
    outcome = get_services().reconciler.handle(payment_event)
    return jsonify(received=True, **outcome.to_dict()), 200
