"""
Applies payment-gateway events to Booking, Payment and TimeSlot.

Gateways redeliver events, so every handler is guarded by a conditional
UPDATE on the current status: the first delivery changes state, any later
delivery of the same event matches zero rows and is reported as a no-op.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import update

from models.booking import Booking, CANCELLED, CONFIRMED, PENDING
from models.payment import (
    Payment,
    PAYMENT_CANCELLED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
)
from models.slot import TimeSlot
from services.tx import conditional_update, transaction
from utils.audit import log_event

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment-succeeded"
PAYMENT_SESSION_EXPIRED = "payment-session-expired"
PAYMENT_FAILED_EVENT = "payment-failed"

REFUND_REQUIRED = "Captured after booking left PENDING; refund required"


@dataclass(frozen=True)
class PaymentEvent:
    kind: str
    booking_id: Optional[int] = None
    gateway_reference: Optional[str] = None  # payment intent id
    transaction_id: Optional[str] = None     # checkout session id
    failure_reason: Optional[str] = None
    event_id: Optional[str] = None


@dataclass
class ReconcileOutcome:
    applied: bool
    booking_id: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"applied": self.applied, "booking_id": self.booking_id, "reason": self.reason}


class PaymentReconciler:
    def __init__(self, session, clock, coupons, notifier):
        self.session = session
        self.clock = clock
        self.coupons = coupons
        self.notifier = notifier
        self._handlers = {
            PAYMENT_SUCCEEDED: self._succeeded,
            PAYMENT_SESSION_EXPIRED: self._expired,
            PAYMENT_FAILED_EVENT: self._failed,
        }

    def handle(self, event: PaymentEvent) -> ReconcileOutcome:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("Ignoring unsupported payment event kind=%s id=%s", event.kind, event.event_id)
            return ReconcileOutcome(False, event.booking_id, "unsupported event")

        outcome = handler(event)
        logger.info(
            "Payment event %s (%s) booking=%s applied=%s reason=%s",
            event.kind, event.event_id, outcome.booking_id, outcome.applied, outcome.reason,
        )
        if outcome.applied:
            booking = self.session.get(Booking, outcome.booking_id)
            self.notifier.booking_changed(
                booking, "BOOKING_CONFIRMED" if booking.status == CONFIRMED else "BOOKING_CANCELLED"
            )
        return outcome

    def _succeeded(self, event: PaymentEvent) -> ReconcileOutcome:
        if event.booking_id is None:
            return ReconcileOutcome(False, None, "missing booking id")

        with transaction(self.session):
            booking = self.session.get(Booking, event.booking_id)
            if booking is None:
                logger.warning("payment-succeeded for unknown booking %s", event.booking_id)
                return ReconcileOutcome(False, event.booking_id, "unknown booking")

            now = self.clock.now()
            changed = conditional_update(
                self.session,
                update(Booking)
                .where(Booking.id == event.booking_id, Booking.status == PENDING)
                .values(status=CONFIRMED, confirmed_at=now, updated_at=now, version=Booking.version + 1),
            )
            if changed != 1:
                if booking.status != CONFIRMED and event.gateway_reference:
                    self._record_unmatched_capture(booking, event)
                return ReconcileOutcome(False, event.booking_id, "booking not pending")

            paid = conditional_update(
                self.session,
                update(Payment)
                .where(Payment.booking_id == event.booking_id, Payment.status != PAYMENT_COMPLETED)
                .values(
                    status=PAYMENT_COMPLETED,
                    gateway_payment_id=event.gateway_reference,
                    transaction_id=event.transaction_id,
                    paid_at=now,
                    failure_reason=None,
                ),
            )
            if paid != 1:
                logger.warning("Booking %s confirmed without a pending payment row", event.booking_id)

            booking = self.session.get(Booking, event.booking_id)
            if booking.time_slot_id is not None:
                held = conditional_update(
                    self.session,
                    update(TimeSlot)
                    .where(
                        TimeSlot.id == booking.time_slot_id,
                        TimeSlot.reserved_booking_id == booking.id,
                        TimeSlot.is_blocked.is_(False),
                    )
                    .values(is_booked=True),
                )
                if held != 1:
                    # should not happen: the reservation hold keeps blockers out
                    logger.error("Slot %s no longer held by booking %s", booking.time_slot_id, booking.id)

            log_event("PAYMENT_PAID", entity="booking", entity_id=event.booking_id,
                      metadata={"gateway_payment_id": event.gateway_reference, "event_id": event.event_id},
                      session=self.session)

        return ReconcileOutcome(True, event.booking_id, None)

    def _expired(self, event: PaymentEvent) -> ReconcileOutcome:
        if event.booking_id is None:
            return ReconcileOutcome(False, None, "missing booking id")

        with transaction(self.session):
            if self.session.get(Booking, event.booking_id) is None:
                logger.warning("payment-session-expired for unknown booking %s", event.booking_id)
                return ReconcileOutcome(False, event.booking_id, "unknown booking")

            if not self._cancel_pending(event.booking_id, "Payment session expired"):
                return ReconcileOutcome(False, event.booking_id, "booking not pending")

            conditional_update(
                self.session,
                update(Payment)
                .where(Payment.booking_id == event.booking_id, Payment.status == PAYMENT_PENDING)
                .values(status=PAYMENT_CANCELLED, failure_reason="Payment session expired"),
            )
            log_event("PAYMENT_EXPIRED", entity="booking", entity_id=event.booking_id,
                      metadata={"event_id": event.event_id}, session=self.session)

        return ReconcileOutcome(True, event.booking_id, None)

    def _failed(self, event: PaymentEvent) -> ReconcileOutcome:
        reason = (event.failure_reason or "Payment failed")[:255]

        with transaction(self.session):
            payment = None
            if event.gateway_reference:
                payment = self.session.query(Payment).filter_by(gateway_payment_id=event.gateway_reference).first()
            if payment is None and event.booking_id is not None:
                payment = self.session.query(Payment).filter_by(booking_id=event.booking_id).first()
            if payment is None:
                logger.warning("payment-failed for unknown payment %s", event.gateway_reference)
                return ReconcileOutcome(False, event.booking_id, "unknown payment")

            booking_id = payment.booking_id
            values = {"status": PAYMENT_FAILED, "failure_reason": reason}
            if event.gateway_reference and not payment.gateway_payment_id:
                values["gateway_payment_id"] = event.gateway_reference
            conditional_update(
                self.session,
                update(Payment)
                .where(Payment.id == payment.id, Payment.status.in_((PAYMENT_PENDING, PAYMENT_FAILED)))
                .values(**values),
            )

            if not self._cancel_pending(booking_id, "Payment failed"):
                return ReconcileOutcome(False, booking_id, "booking not pending")

            log_event("PAYMENT_FAILED", entity="booking", entity_id=booking_id,
                      metadata={"reason": reason, "event_id": event.event_id}, session=self.session)

        return ReconcileOutcome(True, booking_id, None)

    def _record_unmatched_capture(self, booking, event: PaymentEvent):
        """Money captured for a booking that already left PENDING; keep the reference for a refund."""
        logger.warning(
            "Payment %s captured for booking %s in status %s; refund required",
            event.gateway_reference, booking.id, booking.status,
        )
        conditional_update(
            self.session,
            update(Payment)
            .where(
                Payment.booking_id == booking.id,
                Payment.status != PAYMENT_COMPLETED,
                Payment.gateway_payment_id.is_(None),
            )
            .values(gateway_payment_id=event.gateway_reference, failure_reason=REFUND_REQUIRED),
        )
        log_event("PAYMENT_UNMATCHED", entity="booking", entity_id=booking.id,
                  metadata={"gateway_payment_id": event.gateway_reference, "transaction_id": event.transaction_id,
                            "booking_status": booking.status, "event_id": event.event_id},
                  session=self.session)

    def _cancel_pending(self, booking_id, reason) -> bool:
        now = self.clock.now()
        changed = conditional_update(
            self.session,
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == PENDING)
            .values(
                status=CANCELLED,
                cancelled_at=now,
                updated_at=now,
                cancellation_reason=reason,
                version=Booking.version + 1,
            ),
        )
        if changed != 1:
            return False

        conditional_update(
            self.session,
            update(TimeSlot)
            .where(TimeSlot.reserved_booking_id == booking_id)
            .values(reserved_booking_id=None, is_booked=False),
        )
        self.coupons.release(booking_id)
        return True

    def expire_stale(self, older_than_minutes=30) -> list:
        """
        Cancels PENDING bookings whose checkout was abandoned, as if the
        gateway had sent payment-session-expired for each.
        """
        # created_at is stored in UTC
        cutoff = self.clock.utcnow() - timedelta(minutes=older_than_minutes)
        stale_ids = [
            row.id
            for row in self.session.query(Booking.id).filter(
                Booking.status == PENDING,
                Booking.created_at < cutoff,
            )
        ]
        self.session.rollback()

        expired = []
        for booking_id in stale_ids:
            outcome = self.handle(PaymentEvent(
                kind=PAYMENT_SESSION_EXPIRED,
                booking_id=booking_id,
                event_id=f"sweep_{booking_id}",
            ))
            if outcome.applied:
                expired.append(booking_id)
        return expired
