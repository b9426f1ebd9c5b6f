from datetime import timedelta

from models import db, AuditLog, Booking, Payment, TimeSlot
from models.booking import CANCELLED, CONFIRMED, PENDING
from models.payment import PAYMENT_CANCELLED, PAYMENT_COMPLETED, PAYMENT_FAILED
from services.payment_reconciler import (
    PAYMENT_FAILED_EVENT,
    PAYMENT_SESSION_EXPIRED,
    PAYMENT_SUCCEEDED,
    PaymentEvent,
    REFUND_REQUIRED,
)
from conftest import NOW, TOMORROW, actor_for


def _pending(services, court, player, start="10:00"):
    return services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), start)


def test_success_confirms_booking_and_books_slot(services, court, player, notifier):
    booking = _pending(services, court, player)

    outcome = services.reconciler.handle(PaymentEvent(
        kind=PAYMENT_SUCCEEDED, booking_id=booking.id, gateway_reference="pi_123",
        transaction_id="cs_123", event_id="evt_1",
    ))

    assert outcome.applied is True
    booking = db.session.get(Booking, booking.id)
    assert booking.status == CONFIRMED
    assert booking.confirmed_at is not None
    assert booking.version == 2
    payment = booking.payment
    assert payment.status == PAYMENT_COMPLETED
    assert payment.gateway_payment_id == "pi_123"
    assert payment.transaction_id == "cs_123"
    assert payment.paid_at is not None
    slot = db.session.get(TimeSlot, booking.time_slot_id)
    assert slot.is_booked is True
    assert slot.reserved_booking_id == booking.id
    assert ("BOOKING_CONFIRMED", booking.id) in notifier.sent


def test_duplicate_success_is_a_noop(services, court, player, notifier):
    booking = _pending(services, court, player)
    event = PaymentEvent(kind=PAYMENT_SUCCEEDED, booking_id=booking.id, gateway_reference="pi_1", event_id="evt_1")

    first = services.reconciler.handle(event)
    second = services.reconciler.handle(event)

    assert first.applied is True
    assert second.applied is False
    assert second.reason == "booking not pending"
    assert db.session.get(Booking, booking.id).version == 2
    assert AuditLog.query.filter_by(action="PAYMENT_PAID").count() == 1
    assert notifier.sent.count(("BOOKING_CONFIRMED", booking.id)) == 1


def test_expiry_cancels_pending_and_frees_slot(services, court, player):
    booking = _pending(services, court, player)

    outcome = services.reconciler.handle(PaymentEvent(kind=PAYMENT_SESSION_EXPIRED, booking_id=booking.id))

    assert outcome.applied is True
    booking = db.session.get(Booking, booking.id)
    assert booking.status == CANCELLED
    assert booking.cancellation_reason == "Payment session expired"
    assert booking.payment.status == PAYMENT_CANCELLED
    slot = db.session.get(TimeSlot, booking.time_slot_id)
    assert slot.reserved_booking_id is None
    assert slot.is_booked is False


def test_expiry_after_success_is_ignored(services, court, player):
    booking = _pending(services, court, player)
    services.reconciler.handle(PaymentEvent(kind=PAYMENT_SUCCEEDED, booking_id=booking.id))

    outcome = services.reconciler.handle(PaymentEvent(kind=PAYMENT_SESSION_EXPIRED, booking_id=booking.id))

    assert outcome.applied is False
    assert db.session.get(Booking, booking.id).status == CONFIRMED


def test_success_after_expiry_is_ignored(services, court, player):
    booking = _pending(services, court, player)
    services.reconciler.handle(PaymentEvent(kind=PAYMENT_SESSION_EXPIRED, booking_id=booking.id))

    outcome = services.reconciler.handle(PaymentEvent(kind=PAYMENT_SUCCEEDED, booking_id=booking.id))

    assert outcome.applied is False
    assert db.session.get(Booking, booking.id).status == CANCELLED


def test_failure_marks_payment_failed(services, court, player):
    booking = _pending(services, court, player)

    outcome = services.reconciler.handle(PaymentEvent(
        kind=PAYMENT_FAILED_EVENT, booking_id=booking.id, gateway_reference="pi_fail",
        failure_reason="Your card was declined.",
    ))

    assert outcome.applied is True
    payment = Payment.query.filter_by(booking_id=booking.id).one()
    assert payment.status == PAYMENT_FAILED
    assert payment.failure_reason == "Your card was declined."
    assert payment.gateway_payment_id == "pi_fail"
    assert db.session.get(Booking, booking.id).status == CANCELLED


def test_repeated_failure_is_a_noop(services, court, player):
    booking = _pending(services, court, player)
    event = PaymentEvent(kind=PAYMENT_FAILED_EVENT, booking_id=booking.id, gateway_reference="pi_fail")

    services.reconciler.handle(event)
    again = services.reconciler.handle(event)

    assert again.applied is False
    assert again.booking_id == booking.id


def test_unknown_booking(services, court):
    for kind in (PAYMENT_SUCCEEDED, PAYMENT_SESSION_EXPIRED, PAYMENT_FAILED_EVENT):
        outcome = services.reconciler.handle(PaymentEvent(kind=kind, booking_id=4040))
        assert outcome.applied is False


def test_missing_booking_id(services):
    outcome = services.reconciler.handle(PaymentEvent(kind=PAYMENT_SUCCEEDED))
    assert outcome.applied is False
    assert outcome.reason == "missing booking id"


def test_unsupported_kind(services):
    outcome = services.reconciler.handle(PaymentEvent(kind="refund-issued", booking_id=1))
    assert outcome.applied is False


def test_expire_stale_sweeps_old_pending(services, court, player):
    old = _pending(services, court, player, "09:00")
    fresh = _pending(services, court, player, "10:00")
    paid = _pending(services, court, player, "11:00")
    services.reconciler.handle(PaymentEvent(kind=PAYMENT_SUCCEEDED, booking_id=paid.id))

    an_hour_ago = NOW - timedelta(hours=1)
    for booking_id in (old.id, paid.id):
        db.session.get(Booking, booking_id).created_at = an_hour_ago
    db.session.commit()

    expired = services.reconciler.expire_stale(older_than_minutes=30)

    assert expired == [old.id]
    assert db.session.get(Booking, old.id).status == CANCELLED
    assert db.session.get(Booking, fresh.id).status == PENDING
    assert db.session.get(Booking, paid.id).status == CONFIRMED


def test_capture_after_expiry_keeps_gateway_reference(services, court, player):
    booking = _pending(services, court, player)
    services.reconciler.handle(PaymentEvent(kind=PAYMENT_SESSION_EXPIRED, booking_id=booking.id))

    outcome = services.reconciler.handle(PaymentEvent(
        kind=PAYMENT_SUCCEEDED, booking_id=booking.id, gateway_reference="pi_late",
        transaction_id="cs_late", event_id="evt_late",
    ))

    assert outcome.applied is False
    assert db.session.get(Booking, booking.id).status == CANCELLED
    payment = Payment.query.filter_by(booking_id=booking.id).one()
    assert payment.status == PAYMENT_CANCELLED
    assert payment.gateway_payment_id == "pi_late"
    assert payment.failure_reason == REFUND_REQUIRED
    row = AuditLog.query.filter_by(action="PAYMENT_UNMATCHED").one()
    assert row.entity_id == str(booking.id)
    assert '"gateway_payment_id": "pi_late"' in row.metadata_json


def test_expire_stale_uses_injected_clock(services, court, player, clock):
    booking = _pending(services, court, player)
    assert services.reconciler.expire_stale(older_than_minutes=30) == []

    clock.advance(timedelta(minutes=45))

    assert services.reconciler.expire_stale(older_than_minutes=30) == [booking.id]
    assert db.session.get(Booking, booking.id).status == CANCELLED
