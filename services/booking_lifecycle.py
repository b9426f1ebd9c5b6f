import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PolicyError,
    StateError,
    ValidationError,
)
from models.booking import (
    ACTIVE_STATUSES,
    BOOKING_STATUSES,
    Booking,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    NO_SHOW,
    PENDING,
)
from models.court import Court
from models.facility import Facility
from models.payment import Payment, PAYMENT_CANCELLED, PAYMENT_PENDING
from models.review import Review
from models.slot import TimeSlot
from models.user import User
from security.rbac import ensure_facility_owner
from services.tx import conditional_update, money, transaction
from utils.audit import log_event
from utils.timeparse import add_minutes, combine, hourly_grid, overlaps, parse_date, parse_hhmm, to_minutes

logger = logging.getLogger(__name__)

# status -> statuses it may move to
TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {CANCELLED, COMPLETED, NO_SHOW},
}

NOTIFY_EVENTS = {
    CONFIRMED: "BOOKING_CONFIRMED",
    CANCELLED: "BOOKING_CANCELLED",
    COMPLETED: "BOOKING_COMPLETED",
    NO_SHOW: "BOOKING_NO_SHOW",
}


def assert_transition(current: str, target: str):
    if target not in TRANSITIONS.get(current, ()):
        raise StateError(f"Cannot change booking status from {current} to {target}")


@dataclass
class PriceBreakdown:
    price_per_hour: Decimal
    total_hours: Decimal
    total_amount: Decimal
    platform_fee: Decimal
    tax: Decimal
    discount: Decimal
    final_amount: Decimal


def price_booking(price_per_hour, total_hours, fee_rate, tax_rate, discount=0) -> PriceBreakdown:
    price_per_hour = money(price_per_hour)
    total_hours = Decimal(str(total_hours))
    total = money(price_per_hour * total_hours)
    fee = money(total * Decimal(str(fee_rate)))
    tax = money((total + fee) * Decimal(str(tax_rate)))
    discount = money(discount)
    final = max(Decimal("0.00"), total + fee + tax - discount)
    return PriceBreakdown(price_per_hour, total_hours, total, fee, tax, discount, final)


class BookingLifecycle:
    """
    Creates bookings and moves them through
    PENDING -> CONFIRMED -> COMPLETED / NO_SHOW, with CANCELLED reachable
    from PENDING and CONFIRMED.
    """

    def __init__(self, session, clock, coupons, notifier, settings=None):
        settings = settings or {}
        self.session = session
        self.clock = clock
        self.coupons = coupons
        self.notifier = notifier
        self.slot_minutes = int(settings.get("SLOT_DURATION_MINUTES", 60))
        self.default_open_time = settings.get("DEFAULT_OPEN_TIME", "06:00")
        self.default_close_time = settings.get("DEFAULT_CLOSE_TIME", "22:00")
        self.cancel_cutoff_hours = float(settings.get("CANCEL_CUTOFF_HOURS", 24))
        self.modify_cutoff_hours = float(settings.get("MODIFY_CUTOFF_HOURS", 24))
        self.modification_fee = money(settings.get("MODIFICATION_FEE", 50))
        self.platform_fee_rate = settings.get("PLATFORM_FEE_RATE", "0.03")
        self.tax_rate = settings.get("TAX_RATE", "0.18")
        self.currency = (settings.get("CURRENCY") or "inr").upper()

    # ---------- create ----------

    def create(self, actor, court_id, day, start_time, end_time=None, coupon_code=None,
               special_requests=None) -> Booking:
        if not court_id or not day or not start_time:
            raise ValidationError("court_id, date and start_time are required")

        day = parse_date(day)
        start = parse_hhmm(start_time, "start_time")
        end = parse_hhmm(end_time, "end_time") if end_time else self._slot_end(start)
        if to_minutes(end) - to_minutes(start) != self.slot_minutes:
            raise ValidationError(f"A booking covers exactly one {self.slot_minutes}-minute slot")
        if combine(day, start) <= self.clock.now():
            raise ValidationError("Cannot book past/started slots")

        with transaction(self.session):
            court = self.session.get(Court, court_id)
            if court is None or not court.is_active:
                raise NotFoundError("Court not found")
            facility = court.facility
            if facility is None or not facility.is_active:
                raise NotFoundError("Facility not found")

            slot = self._slot_for(court, day, start, end)
            hours = Decimal(self.slot_minutes) / Decimal(60)
            base = price_booking(slot.price or court.price_per_hour, hours, self.platform_fee_rate, self.tax_rate)

            quote = None
            if coupon_code:
                quote = self.coupons.validate(coupon_code, base.total_amount, actor.user_id)
            price = price_booking(
                base.price_per_hour, hours, self.platform_fee_rate, self.tax_rate,
                discount=quote.discount_amount if quote else 0,
            )

            booking = Booking(
                user_id=actor.user_id,
                facility_id=facility.id,
                court_id=court.id,
                time_slot_id=slot.id,
                status=PENDING,
                booking_date=day,
                start_time=start,
                end_time=end,
                total_hours=price.total_hours,
                price_per_hour=price.price_per_hour,
                total_amount=price.total_amount,
                platform_fee=price.platform_fee,
                tax=price.tax,
                discount=price.discount,
                final_amount=price.final_amount,
                special_requests=(special_requests or "").strip() or None,
                created_at=self.clock.utcnow(),
            )
            self.session.add(booking)
            self.session.flush()

            # the check-and-reserve is this single conditional update
            self._claim_slot(slot.id, booking.id)
            self._ensure_no_active_booking(court.id, day, start, end, exclude_id=booking.id)

            if quote:
                self.coupons.redeem(quote, booking)

            self.session.add(Payment(
                booking_id=booking.id,
                status=PAYMENT_PENDING,
                amount=price.total_amount,
                platform_fee=price.platform_fee,
                tax=price.tax,
                total_amount=price.final_amount,
                currency=self.currency,
            ))

            log_event(
                "BOOKING_CREATE",
                user_id=actor.user_id,
                entity="booking",
                entity_id=booking.id,
                metadata={"court_id": court.id, "slot_id": slot.id, "date": day.isoformat(), "start": start,
                          "coupon": quote.coupon.code if quote else None},
                session=self.session,
            )
            booking_id = booking.id

        booking = self.session.get(Booking, booking_id)
        logger.info("Booking %s created PENDING for court %s %s %s", booking_id, court_id, day, start)
        self.notifier.booking_changed(booking, "BOOKING_CREATED")
        return booking

    # ---------- user actions ----------

    def cancel(self, actor, booking_id, reason=None, expected_version=None) -> Booking:
        with transaction(self.session):
            booking = self._lock_booking(booking_id)
            if booking is None or booking.user_id != actor.user_id:
                raise NotFoundError("Booking not found")
            self._check_version(booking, expected_version)

            if booking.status != CONFIRMED:
                raise StateError("Only confirmed bookings can be cancelled")

            cutoff = self.cancel_cutoff_hours
            if self._hours_until_start(booking) < cutoff:
                raise PolicyError(f"Cannot cancel booking less than {cutoff:g} hours before start time")

            self._apply_cancel(booking, (reason or "").strip()[:255] or None)
            log_event("BOOKING_CANCEL", user_id=actor.user_id, entity="booking", entity_id=booking.id,
                      metadata={"reason": reason}, session=self.session)

        booking = self.session.get(Booking, booking_id)
        self.notifier.booking_changed(booking, "BOOKING_CANCELLED")
        return booking

    def modification_fee_for(self, booking, new_day, new_start) -> Decimal:
        # same day, different time: free; any date change: flat fee
        if new_day != booking.booking_date:
            return self.modification_fee
        return Decimal("0.00")

    def quote_modification(self, actor, booking_id, new_date, new_time) -> dict:
        new_day = parse_date(new_date, "new_date")
        new_start = parse_hhmm(new_time, "new_time")
        booking = self.session.get(Booking, booking_id)
        if booking is None or booking.user_id != actor.user_id:
            raise NotFoundError("Booking not found")
        fee = self.modification_fee_for(booking, new_day, new_start)
        return {
            "fee": str(fee),
            "original_amount": str(money(booking.final_amount)),
            "new_total": str(money(booking.final_amount) + fee),
        }

    def modify(self, actor, booking_id, new_date, new_time, expected_version=None) -> Booking:
        new_day = parse_date(new_date, "new_date")
        new_start = parse_hhmm(new_time, "new_time")
        new_end = self._slot_end(new_start)

        with transaction(self.session):
            booking = self._lock_booking(booking_id)
            if booking is None or booking.user_id != actor.user_id:
                raise NotFoundError("Booking not found")
            self._check_version(booking, expected_version)

            if booking.status != CONFIRMED:
                raise StateError("Only confirmed bookings can be modified")

            cutoff = self.modify_cutoff_hours
            if self._hours_until_start(booking) < cutoff:
                raise PolicyError(f"Cannot modify booking less than {cutoff:g} hours before start time")

            if new_day == booking.booking_date and new_start == booking.start_time:
                raise ValidationError("New time matches the current booking")
            if combine(new_day, new_start) <= self.clock.now():
                raise ValidationError("Cannot move a booking into the past")

            self._ensure_no_active_booking(booking.court_id, new_day, new_start, new_end, exclude_id=booking.id)

            court = booking.court
            destination = self._slot_for(court, new_day, new_start, new_end)
            self._claim_slot(destination.id, booking.id, mark_booked=True)

            old = {"date": booking.booking_date.isoformat(), "start": booking.start_time}
            self._release_slot(booking.time_slot_id, booking.id)

            fee = self.modification_fee_for(booking, new_day, new_start)
            booking = self.session.get(Booking, booking_id)
            booking.time_slot_id = destination.id
            booking.booking_date = new_day
            booking.start_time = new_start
            booking.end_time = new_end
            booking.modification_fee = money(booking.modification_fee) + fee
            booking.final_amount = money(booking.final_amount) + fee

            log_event(
                "BOOKING_MODIFY",
                user_id=actor.user_id,
                entity="booking",
                entity_id=booking.id,
                metadata={"from": old, "to": {"date": new_day.isoformat(), "start": new_start}, "fee": fee},
                session=self.session,
            )

        booking = self.session.get(Booking, booking_id)
        self.notifier.booking_changed(booking, "BOOKING_MODIFIED")
        return booking

    def review(self, actor, booking_id, rating, comment=None) -> Review:
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            raise ValidationError("Rating must be between 1 and 5")
        if rating < 1 or rating > 5:
            raise ValidationError("Rating must be between 1 and 5")

        with transaction(self.session):
            booking = self.session.get(Booking, booking_id)
            if booking is None or booking.user_id != actor.user_id:
                raise NotFoundError("Booking not found")
            if booking.status != COMPLETED:
                raise StateError("Reviews can only be submitted for completed bookings")
            if booking.review is not None:
                raise StateError("Review already exists for this booking")

            review = Review(
                booking_id=booking.id,
                user_id=actor.user_id,
                facility_id=booking.facility_id,
                rating=rating,
                comment=(comment or "").strip() or None,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(review)
            except IntegrityError:
                raise StateError("Review already exists for this booking")

            log_event("BOOKING_REVIEW", user_id=actor.user_id, entity="booking", entity_id=booking.id,
                      metadata={"rating": rating}, session=self.session)
        return review

    # ---------- owner actions ----------

    def owner_transition(self, actor, booking_id, new_status, expected_version=None, reason=None) -> Booking:
        new_status = (new_status or "").strip().upper()
        if new_status not in BOOKING_STATUSES:
            raise ValidationError("Invalid booking status")

        with transaction(self.session):
            booking = self._lock_booking(booking_id)
            if booking is None:
                raise NotFoundError("Booking not found")
            ensure_facility_owner(actor, booking.facility)
            self._check_version(booking, expected_version)

            old_status = booking.status
            assert_transition(old_status, new_status)

            now = self.clock.now()
            if new_status == CONFIRMED:
                booking.status = CONFIRMED
                booking.confirmed_at = now
                self.session.flush()
                self._mark_slot_booked(booking)
            elif new_status == CANCELLED:
                self._apply_cancel(booking, (reason or "").strip()[:255] or "Cancelled by facility")
            elif new_status == COMPLETED:
                booking.status = COMPLETED
                booking.completed_at = now
            elif new_status == NO_SHOW:
                booking.status = NO_SHOW
                booking.no_show_at = now

            log_event(
                "BOOKING_STATUS_UPDATE",
                user_id=actor.user_id,
                entity="booking",
                entity_id=booking_id,
                metadata={"from": old_status, "to": new_status},
                session=self.session,
            )

        booking = self.session.get(Booking, booking_id)
        self.notifier.booking_changed(booking, NOTIFY_EVENTS[new_status])
        return booking

    # ---------- account deletion ----------

    def delete_account(self, actor, user_id) -> dict:
        if not actor.is_admin and actor.user_id != user_id:
            raise ForbiddenError("You can only delete your own account")

        cancelled = []
        with transaction(self.session):
            user = self.session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")

            active = (
                self.session.query(Booking)
                .filter(Booking.user_id == user_id, Booking.status.in_(ACTIVE_STATUSES))
                .with_for_update()
                .all()
            )
            for booking in active:
                self._apply_cancel(booking, "Account deleted")
                cancelled.append(booking.id)

            user = self.session.get(User, user_id)
            if user.anonymized_at is None:
                user.email = None
                user.full_name = "Deleted user"
                user.phone_number = None
                user.is_active = False
                user.anonymized_at = self.clock.now()

            log_event("ACCOUNT_DELETE", user_id=actor.user_id, entity="user", entity_id=user_id,
                      metadata={"cancelled_bookings": cancelled}, session=self.session)

        logger.info("Account %s deleted; %s active bookings force-cancelled", user_id, len(cancelled))
        return {"user_id": user_id, "cancelled_bookings": cancelled}

    # ---------- reads ----------

    def get(self, actor, booking_id) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if booking.user_id == actor.user_id or actor.is_admin:
            return booking
        if booking.facility and booking.facility.owner_user_id == actor.user_id:
            return booking
        raise NotFoundError("Booking not found")

    def list_for_user(self, actor, status=None) -> list:
        q = self.session.query(Booking).filter(Booking.user_id == actor.user_id)
        if status:
            q = q.filter(Booking.status == status.upper())
        return q.order_by(Booking.created_at.desc()).limit(200).all()

    def list_for_owner(self, actor, status=None, day=None) -> list:
        q = self.session.query(Booking).join(Facility, Booking.facility_id == Facility.id)
        if not actor.is_admin:
            q = q.filter(Facility.owner_user_id == actor.user_id)
        if status:
            q = q.filter(Booking.status == status.upper())
        if day:
            q = q.filter(Booking.booking_date == parse_date(day))
        return q.order_by(Booking.booking_date.desc(), Booking.start_time.asc()).limit(200).all()

    # ---------- helpers ----------

    def _slot_end(self, start: str) -> str:
        if to_minutes(start) + self.slot_minutes > 24 * 60:
            raise ValidationError("Slot must end before midnight")
        return add_minutes(start, self.slot_minutes)

    def _hours_until_start(self, booking) -> float:
        start = combine(booking.booking_date, booking.start_time)
        return (start - self.clock.now()).total_seconds() / 3600

    def _lock_booking(self, booking_id):
        # re-read under row lock inside the caller's transaction
        return (
            self.session.query(Booking)
            .filter(Booking.id == booking_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def _check_version(booking, expected_version):
        if expected_version is None:
            return
        try:
            expected_version = int(expected_version)
        except (TypeError, ValueError):
            raise ValidationError("version must be an integer")
        if booking.version != expected_version:
            raise ConflictError(
                "Booking was modified by another request, reload and retry",
                current_version=booking.version,
                current_status=booking.status,
            )

    def _grid_for(self, court, day):
        """(start, end) pairs a booking on this court/day may take."""
        facility = court.facility
        oh = facility.hours_for(day.weekday()) if facility else None
        open_time, close_time = self.default_open_time, self.default_close_time
        if oh is not None:
            if oh.is_closed:
                raise ValidationError("Facility is closed on this day")
            if oh.open_time and oh.close_time:
                open_time, close_time = oh.open_time, oh.close_time
        return open_time, close_time, set(hourly_grid(open_time, close_time, self.slot_minutes))

    def _slot_for(self, court, day, start, end) -> TimeSlot:
        """Finds the slot row for court/day/start, creating it when the day has no generated row."""
        open_time, close_time, grid = self._grid_for(court, day)
        if to_minutes(start) < to_minutes(open_time) or to_minutes(end) > to_minutes(close_time):
            raise ValidationError(f"Facility is open {open_time}-{close_time} on this day")
        if (start, end) not in grid:
            raise ValidationError("Requested time does not match the court's slot grid")

        slot = (
            self.session.query(TimeSlot)
            .filter_by(court_id=court.id, date=day, start_time=start)
            .first()
        )
        if slot is not None:
            if slot.end_time != end and not slot.is_blocked:
                raise ValidationError("Requested time does not match the court's slot grid")
            return slot

        # any other row covering part of the hour (a block, or a row off the current grid)
        taken = (
            self.session.query(TimeSlot.id)
            .filter(
                TimeSlot.court_id == court.id,
                TimeSlot.date == day,
                TimeSlot.start_time < end,
                TimeSlot.end_time > start,
            )
            .first()
        )
        if taken is not None:
            raise ConflictError("Time slot is not available")

        slot = TimeSlot(
            court_id=court.id,
            date=day,
            start_time=start,
            end_time=end,
            price=money(court.price_per_hour),
            is_booked=False,
            is_blocked=False,
        )
        try:
            with self.session.begin_nested():
                self.session.add(slot)
        except IntegrityError:
            # created concurrently by another booking or the generator
            slot = (
                self.session.query(TimeSlot)
                .filter_by(court_id=court.id, date=day, start_time=start)
                .one()
            )
        return slot

    def _claim_slot(self, slot_id, booking_id, mark_booked=False):
        values = {"reserved_booking_id": booking_id}
        if mark_booked:
            values["is_booked"] = True
        changed = conditional_update(
            self.session,
            update(TimeSlot)
            .where(
                TimeSlot.id == slot_id,
                TimeSlot.reserved_booking_id.is_(None),
                TimeSlot.is_booked.is_(False),
                TimeSlot.is_blocked.is_(False),
            )
            .values(**values),
        )
        if changed != 1:
            raise ConflictError("Time slot is not available")

    def _release_slot(self, slot_id, booking_id):
        if slot_id is None:
            return
        conditional_update(
            self.session,
            update(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.reserved_booking_id == booking_id)
            .values(is_booked=False, reserved_booking_id=None),
        )

    def _mark_slot_booked(self, booking):
        if booking.time_slot_id is None:
            return
        changed = conditional_update(
            self.session,
            update(TimeSlot)
            .where(
                TimeSlot.id == booking.time_slot_id,
                TimeSlot.reserved_booking_id == booking.id,
                TimeSlot.is_blocked.is_(False),
            )
            .values(is_booked=True),
        )
        if changed != 1:
            raise ConflictError("Time slot is no longer held by this booking")

    def _ensure_no_active_booking(self, court_id, day, start, end, exclude_id=None):
        q = self.session.query(Booking.start_time, Booking.end_time).filter(
            Booking.court_id == court_id,
            Booking.booking_date == day,
            Booking.status.in_(ACTIVE_STATUSES),
        )
        if exclude_id is not None:
            q = q.filter(Booking.id != exclude_id)
        for other in q:
            if overlaps(other.start_time, other.end_time, start, end):
                raise ConflictError("The selected time slot is not available")

    def _apply_cancel(self, booking, reason):
        was_pending = booking.status == PENDING
        booking_id = booking.id
        slot_id = booking.time_slot_id

        booking.status = CANCELLED
        booking.cancelled_at = self.clock.now()
        booking.cancellation_reason = reason
        self.session.flush()

        self._release_slot(slot_id, booking_id)
        conditional_update(
            self.session,
            update(Payment)
            .where(Payment.booking_id == booking_id, Payment.status == PAYMENT_PENDING)
            .values(status=PAYMENT_CANCELLED, failure_reason=reason),
        )
        if was_pending:
            self.coupons.release(booking_id)
