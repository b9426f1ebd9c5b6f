import logging
import time
from decimal import Decimal
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import stripe

from errors import NotFoundError, RetryableError, StateError
from models.booking import Booking, PENDING
from models.payment import Payment, PAYMENT_PENDING
from services.payment_reconciler import PAYMENT_SUCCEEDED, PaymentEvent
from services.tx import money, transaction
from utils.audit import log_event

logger = logging.getLogger(__name__)

BOOKING_PAYMENT = "booking_payment"  # checkout metadata "type"


def _append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunparse(parts._replace(query=urlencode(query)))


class CheckoutService:
    """Opens a Stripe Checkout session for a PENDING booking."""

    def __init__(self, session, reconciler, settings=None):
        settings = settings or {}
        self.session = session
        self.reconciler = reconciler
        self.api_key = settings.get("STRIPE_SECRET_KEY")
        self.success_url = settings.get("CHECKOUT_SUCCESS_URL")
        self.cancel_url = settings.get("CHECKOUT_CANCEL_URL")
        self.expiry_minutes = int(settings.get("CHECKOUT_EXPIRY_MINUTES", 30))
        self.currency = (settings.get("CURRENCY") or "inr").lower()

    def start(self, actor, booking_id) -> dict:
        booking = self.session.get(Booking, booking_id)
        if booking is None or booking.user_id != actor.user_id:
            raise NotFoundError("Booking not found")
        if booking.status != PENDING:
            raise StateError("Only pending bookings can be paid")
        payment = booking.payment
        if payment is None or payment.status != PAYMENT_PENDING:
            raise StateError("Booking has no open payment")

        amount = money(booking.final_amount)
        if amount <= Decimal("0.00"):
            # fully discounted: nothing to collect
            outcome = self.reconciler.handle(PaymentEvent(
                kind=PAYMENT_SUCCEEDED,
                booking_id=booking.id,
                gateway_reference=f"free_{booking.id}",
                event_id=f"free_{booking.id}",
            ))
            return {"checkout_url": None, "session_id": None, "confirmed": outcome.applied}

        if not self.api_key:
            raise RetryableError("Payment gateway not configured")
        if not self.success_url or not self.cancel_url:
            raise RetryableError("Checkout success/cancel URLs not configured")

        stripe.api_key = self.api_key
        metadata = {"booking_id": str(booking.id), "user_id": str(actor.user_id), "type": BOOKING_PAYMENT}
        checkout = stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": f"Court booking - {booking.court.name}",
                        "description": f"{booking.booking_date.isoformat()} {booking.start_time}-{booking.end_time}",
                    },
                    "unit_amount": int(amount * 100),  # smallest currency unit
                },
                "quantity": 1,
            }],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            success_url=_append_query(self.success_url, {"booking_id": str(booking.id)}),
            cancel_url=_append_query(self.cancel_url, {"booking_id": str(booking.id)}),
            expires_at=int(time.time()) + self.expiry_minutes * 60,
        )

        with transaction(self.session):
            payment = self.session.query(Payment).filter_by(booking_id=booking_id).one()
            payment.gateway_order_id = checkout["id"]
            log_event("PAYMENT_SESSION_CREATED", user_id=actor.user_id, entity="booking", entity_id=booking_id,
                      metadata={"checkout_session_id": checkout["id"]}, session=self.session)

        return {"checkout_url": checkout["url"], "session_id": checkout["id"], "confirmed": False}
