from datetime import timedelta
from decimal import Decimal

import pytest

from errors import ConflictError, ForbiddenError, NotFoundError, PolicyError, StateError, ValidationError
from models import db, Booking, Payment, TimeSlot, User
from models.booking import CANCELLED, COMPLETED, CONFIRMED, NO_SHOW, PENDING
from models.payment import PAYMENT_CANCELLED, PAYMENT_PENDING
from services.booking_lifecycle import assert_transition, price_booking
from services.payment_reconciler import PAYMENT_SUCCEEDED, PaymentEvent
from conftest import TODAY, TOMORROW, actor_for, admin_actor

IN_TWO_DAYS = TODAY + timedelta(days=2)


def confirm(services, booking_id):
    outcome = services.reconciler.handle(PaymentEvent(kind=PAYMENT_SUCCEEDED, booking_id=booking_id))
    assert outcome.applied
    return db.session.get(Booking, booking_id)


def slot_of(booking):
    return db.session.get(TimeSlot, booking.time_slot_id)


# ---------- pricing ----------

def test_price_breakdown():
    price = price_booking("500.00", 1, "0.03", "0.18")
    assert price.total_amount == Decimal("500.00")
    assert price.platform_fee == Decimal("15.00")
    assert price.tax == Decimal("92.70")
    assert price.final_amount == Decimal("607.70")


def test_price_never_goes_negative():
    price = price_booking("100.00", 1, "0.03", "0.18", discount="1000")
    assert price.final_amount == Decimal("0.00")


# ---------- create ----------

def test_create_reserves_slot_pending_payment(services, court, player, notifier):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00",
                                       special_requests="  bring bibs ")

    assert booking.status == PENDING
    assert booking.start_time == "10:00"
    assert booking.end_time == "11:00"
    assert booking.final_amount == Decimal("607.70")
    assert booking.special_requests == "bring bibs"
    assert booking.version == 1

    slot = slot_of(booking)
    assert slot.reserved_booking_id == booking.id
    assert slot.is_booked is False

    payment = Payment.query.filter_by(booking_id=booking.id).one()
    assert payment.status == PAYMENT_PENDING
    assert payment.total_amount == Decimal("607.70")
    assert ("BOOKING_CREATED", booking.id) in notifier.sent


def test_create_uses_generated_slot(services, court, player):
    services.slot_generator.generate(days=2)
    generated = TimeSlot.query.filter_by(court_id=court.id, date=TOMORROW, start_time="09:00").one()

    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "9:00")

    assert booking.time_slot_id == generated.id
    assert booking.start_time == "09:00"


def test_same_slot_cannot_be_booked_twice(services, court, player, make_user):
    services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    rival = make_user()

    with pytest.raises(ConflictError):
        services.bookings.create(actor_for(rival), court.id, TOMORROW.isoformat(), "10:00")

    assert Booking.query.count() == 1


def test_claim_is_decided_by_the_conditional_update(services, court, player, make_user):
    # both callers saw the slot free; only the first claim lands
    services.slot_generator.generate(days=2)
    assert services.availability.is_available(court.id, TOMORROW, "10:00")
    first = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")

    with pytest.raises(ConflictError):
        services.bookings._claim_slot(first.time_slot_id, first.id + 1000)

    db.session.rollback()
    assert slot_of(first).reserved_booking_id == first.id


def test_cancelled_slot_can_be_booked_again(services, court, player, owner, make_user):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    services.bookings.owner_transition(actor_for(owner), booking.id, CANCELLED)

    again = services.bookings.create(actor_for(make_user()), court.id, TOMORROW.isoformat(), "10:00")
    assert again.time_slot_id == booking.time_slot_id


@pytest.mark.parametrize("day,start,end", [
    (TODAY.isoformat(), "07:00", None),        # already past
    (TOMORROW.isoformat(), "08:00", None),     # before opening
    (TOMORROW.isoformat(), "11:30", None),     # runs past closing
    (TOMORROW.isoformat(), "09:00", "11:00"),  # two slots
    (TOMORROW.isoformat(), "9am", None),
    ("tomorrow", "09:00", None),
])
def test_create_validation(services, court, player, day, start, end):
    with pytest.raises(ValidationError):
        services.bookings.create(actor_for(player), court.id, day, start, end)


def test_create_on_closed_day(services, owner, player, make_facility):
    court = make_facility(owner, closed_days=(TOMORROW.weekday(),)).courts[0]
    with pytest.raises(ValidationError):
        services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")


@pytest.mark.parametrize("generated", [True, False])
def test_create_off_grid_start_is_rejected(services, court, player, generated):
    if generated:
        services.slot_generator.generate(days=2)

    with pytest.raises(ValidationError):
        services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "09:30")

    assert Booking.query.count() == 0
    assert all(s["available"] for s in services.availability.for_court(court.id, TOMORROW))


def test_create_follows_default_grid_without_operating_hours(services, owner, player, make_facility):
    court = make_facility(owner).courts[0]
    for oh in court.facility.operating_hours:
        oh.open_time = None
        oh.close_time = None
    db.session.commit()

    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "21:00")
    assert (booking.start_time, booking.end_time) == ("21:00", "22:00")
    with pytest.raises(ValidationError):
        services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "20:30")


def test_create_unknown_court(services, court, player):
    with pytest.raises(NotFoundError):
        services.bookings.create(actor_for(player), 31337, TOMORROW.isoformat(), "10:00")


# ---------- cancel ----------

def test_cancel_confirmed_booking_frees_slot(services, court, player, notifier):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    booking = confirm(services, booking.id)

    cancelled = services.bookings.cancel(actor_for(player), booking.id, reason="Rain", expected_version=booking.version)

    assert cancelled.status == CANCELLED
    assert cancelled.cancellation_reason == "Rain"
    assert cancelled.cancelled_at is not None
    slot = slot_of(cancelled)
    assert slot.reserved_booking_id is None
    assert slot.is_booked is False
    assert ("BOOKING_CANCELLED", booking.id) in notifier.sent


def test_cancel_inside_cutoff_is_refused(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, TODAY.isoformat(), "10:00")
    confirm(services, booking.id)

    with pytest.raises(PolicyError):
        services.bookings.cancel(actor_for(player), booking.id)

    assert db.session.get(Booking, booking.id).status == CONFIRMED


def test_cancel_exactly_at_cutoff_is_allowed(services, court, player, clock):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    confirm(services, booking.id)
    clock.advance(timedelta(hours=2))  # now exactly 24h before start

    assert services.bookings.cancel(actor_for(player), booking.id).status == CANCELLED


def test_cancel_pending_booking_is_invalid_state(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    with pytest.raises(StateError):
        services.bookings.cancel(actor_for(player), booking.id)


def test_cancel_someone_elses_booking(services, court, player, make_user):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)
    with pytest.raises(NotFoundError):
        services.bookings.cancel(actor_for(make_user()), booking.id)


def test_cancel_with_stale_version(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)

    with pytest.raises(ConflictError) as excinfo:
        services.bookings.cancel(actor_for(player), booking.id, expected_version=1)

    assert excinfo.value.details["current_version"] == 2
    assert excinfo.value.details["current_status"] == CONFIRMED


# ---------- modify ----------

def test_modification_fee_depends_on_date_change(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)
    actor = actor_for(player)

    other_day = services.bookings.quote_modification(actor, booking.id, (IN_TWO_DAYS + timedelta(days=1)).isoformat(), "10:00")
    same_day = services.bookings.quote_modification(actor, booking.id, IN_TWO_DAYS.isoformat(), "11:00")

    assert other_day == {"fee": "50.00", "original_amount": "607.70", "new_total": "657.70"}
    assert same_day["fee"] == "0.00"


def test_modify_moves_booking_and_charges_fee(services, court, player, notifier):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    booking = confirm(services, booking.id)
    old_slot_id = booking.time_slot_id
    new_day = IN_TWO_DAYS + timedelta(days=1)

    moved = services.bookings.modify(actor_for(player), booking.id, new_day.isoformat(), "11:00",
                                     expected_version=booking.version)

    assert moved.booking_date == new_day
    assert (moved.start_time, moved.end_time) == ("11:00", "12:00")
    assert moved.modification_fee == Decimal("50.00")
    assert moved.final_amount == Decimal("657.70")
    assert moved.status == CONFIRMED

    old_slot = db.session.get(TimeSlot, old_slot_id)
    assert old_slot.reserved_booking_id is None and old_slot.is_booked is False
    new_slot = slot_of(moved)
    assert new_slot.reserved_booking_id == moved.id and new_slot.is_booked is True
    assert ("BOOKING_MODIFIED", booking.id) in notifier.sent


def test_modify_same_day_is_free(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)

    moved = services.bookings.modify(actor_for(player), booking.id, IN_TWO_DAYS.isoformat(), "09:00")

    assert moved.modification_fee == Decimal("0.00")
    assert moved.final_amount == Decimal("607.70")


def test_modify_into_taken_slot(services, court, player, make_user):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)
    services.bookings.create(actor_for(make_user()), court.id, IN_TWO_DAYS.isoformat(), "11:00")

    with pytest.raises(ConflictError):
        services.bookings.modify(actor_for(player), booking.id, IN_TWO_DAYS.isoformat(), "11:00")

    assert db.session.get(Booking, booking.id).start_time == "10:00"


def test_modify_inside_cutoff(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, TODAY.isoformat(), "10:00")
    confirm(services, booking.id)

    with pytest.raises(PolicyError):
        services.bookings.modify(actor_for(player), booking.id, IN_TWO_DAYS.isoformat(), "10:00")


def test_modify_to_identical_time(services, court, player):
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)

    with pytest.raises(ValidationError):
        services.bookings.modify(actor_for(player), booking.id, IN_TWO_DAYS.isoformat(), "10:00")


def test_modify_to_off_grid_time(services, court, player):
    services.slot_generator.generate(days=3)
    booking = services.bookings.create(actor_for(player), court.id, IN_TWO_DAYS.isoformat(), "10:00")
    confirm(services, booking.id)

    with pytest.raises(ValidationError):
        services.bookings.modify(actor_for(player), booking.id, IN_TWO_DAYS.isoformat(), "10:30")

    booking = db.session.get(Booking, booking.id)
    assert (booking.start_time, booking.status) == ("10:00", CONFIRMED)
    assert TimeSlot.query.filter_by(start_time="10:30").count() == 0


# ---------- owner transitions ----------

def test_transition_table():
    assert_transition(PENDING, CONFIRMED)
    assert_transition(CONFIRMED, NO_SHOW)
    for current, target in [(PENDING, COMPLETED), (CANCELLED, CONFIRMED), (COMPLETED, CANCELLED),
                            (NO_SHOW, COMPLETED), (CONFIRMED, PENDING)]:
        with pytest.raises(StateError):
            assert_transition(current, target)


def test_owner_confirms_then_completes(services, court, owner, player):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")

    confirmed = services.bookings.owner_transition(actor_for(owner), booking.id, "confirmed")
    assert confirmed.status == CONFIRMED
    assert confirmed.confirmed_at is not None
    assert slot_of(confirmed).is_booked is True

    completed = services.bookings.owner_transition(actor_for(owner), booking.id, COMPLETED)
    assert completed.status == COMPLETED
    assert completed.completed_at is not None

    with pytest.raises(StateError):
        services.bookings.owner_transition(actor_for(owner), booking.id, CONFIRMED)


def test_owner_marks_no_show(services, court, owner, player):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    confirm(services, booking.id)

    result = services.bookings.owner_transition(actor_for(owner), booking.id, NO_SHOW)
    assert result.status == NO_SHOW
    assert result.no_show_at is not None


def test_owner_cancels_pending_booking(services, court, owner, player):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")

    result = services.bookings.owner_transition(actor_for(owner), booking.id, CANCELLED)

    assert result.status == CANCELLED
    assert result.cancellation_reason == "Cancelled by facility"
    assert result.payment.status == PAYMENT_CANCELLED
    assert slot_of(result).reserved_booking_id is None


def test_other_owner_cannot_transition(services, court, player, make_user):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    stranger = make_user(role="facility_owner")
    with pytest.raises(ForbiddenError):
        services.bookings.owner_transition(actor_for(stranger), booking.id, CONFIRMED)


def test_unknown_status(services, court, owner, player):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    with pytest.raises(ValidationError):
        services.bookings.owner_transition(actor_for(owner), booking.id, "ARCHIVED")


# ---------- reviews ----------

def test_review_after_completion(services, court, owner, player):
    booking = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    with pytest.raises(StateError):
        services.bookings.review(actor_for(player), booking.id, 5)

    confirm(services, booking.id)
    services.bookings.owner_transition(actor_for(owner), booking.id, COMPLETED)

    review = services.bookings.review(actor_for(player), booking.id, 4, "Great turf")
    assert review.rating == 4
    assert review.facility_id == court.facility_id

    with pytest.raises(StateError):
        services.bookings.review(actor_for(player), booking.id, 5)


@pytest.mark.parametrize("rating", [0, 6, "five", None])
def test_review_rating_range(services, court, player, rating):
    with pytest.raises(ValidationError):
        services.bookings.review(actor_for(player), 1, rating)


# ---------- account deletion ----------

def test_delete_account_cancels_active_bookings(services, court, player):
    pending = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "09:00")
    confirmed = services.bookings.create(actor_for(player), court.id, TOMORROW.isoformat(), "10:00")
    confirm(services, confirmed.id)

    result = services.bookings.delete_account(actor_for(player), player.id)

    assert sorted(result["cancelled_bookings"]) == sorted([pending.id, confirmed.id])
    for booking_id in (pending.id, confirmed.id):
        booking = db.session.get(Booking, booking_id)
        assert booking.status == CANCELLED
        assert booking.cancellation_reason == "Account deleted"
        assert slot_of(booking).reserved_booking_id is None
    user = db.session.get(User, player.id)
    assert user.email is None
    assert user.is_active is False
    assert user.anonymized_at is not None


def test_delete_someone_elses_account(services, player, make_user):
    with pytest.raises(ForbiddenError):
        services.bookings.delete_account(actor_for(make_user()), player.id)


def test_admin_deletes_account(services, player):
    result = services.bookings.delete_account(admin_actor(), player.id)
    assert result == {"user_id": player.id, "cancelled_bookings": []}
