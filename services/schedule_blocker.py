import logging
from dataclasses import dataclass, field

from sqlalchemy import update

from errors import ConflictError, NotFoundError, StateError, ValidationError
from models.booking import ACTIVE_STATUSES, Booking
from models.court import Court
from models.facility import Facility
from models.slot import TimeSlot
from security.rbac import ensure_facility_owner
from services.tx import conditional_update, money, transaction
from utils.audit import log_event
from utils.timeparse import parse_date, parse_hhmm

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_REASON = "Blocked by owner"


def uncovered(start: str, end: str, rows) -> list:
    """Sub-ranges of [start, end) not covered by any of rows (sorted by start_time)."""
    gaps = []
    cursor = start
    for row in rows:
        if row.start_time > cursor:
            gaps.append((cursor, min(row.start_time, end)))
        cursor = max(cursor, row.end_time)
        if cursor >= end:
            break
    if cursor < end:
        gaps.append((cursor, end))
    return gaps


@dataclass
class BlockResult:
    slots_affected: int
    slot_ids: list = field(default_factory=list)


class ScheduleBlocker:
    """
    Takes slot ranges out of circulation (maintenance, private events).
    Competes with bookings for the same TimeSlot rows; whichever
    conditional update lands first wins.
    """

    def __init__(self, session, clock):
        self.session = session
        self.clock = clock

    def block(self, actor, court_id, day, start_time, end_time, reason=None) -> BlockResult:
        if not court_id or not day or not start_time or not end_time:
            raise ValidationError("court_id, date, start_time and end_time are required")

        day = parse_date(day)
        start = parse_hhmm(start_time, "start_time")
        end = parse_hhmm(end_time, "end_time")
        reason = (reason or "").strip()[:255] or DEFAULT_BLOCK_REASON

        if day < self.clock.today():
            raise ValidationError("Cannot block time slots in the past")
        if start >= end:
            raise ValidationError("End time must be after start time")

        with transaction(self.session):
            court = self.session.get(Court, court_id)
            if court is None:
                raise NotFoundError("Court not found")
            ensure_facility_owner(actor, court.facility)

            conflicts = (
                self.session.query(Booking)
                .filter(
                    Booking.court_id == court.id,
                    Booking.booking_date == day,
                    Booking.status.in_(ACTIVE_STATUSES),
                    Booking.start_time < end,
                    Booking.end_time > start,
                )
                .count()
            )
            if conflicts:
                raise ConflictError(
                    "Cannot block time slot - there are existing bookings in this time range",
                    conflicting_bookings=conflicts,
                )

            overlapping = (
                self.session.query(TimeSlot.id, TimeSlot.start_time, TimeSlot.end_time)
                .filter(
                    TimeSlot.court_id == court.id,
                    TimeSlot.date == day,
                    TimeSlot.start_time < end,
                    TimeSlot.end_time > start,
                )
                .order_by(TimeSlot.start_time.asc())
                .all()
            )
            slot_ids = [row.id for row in overlapping]

            if slot_ids:
                changed = conditional_update(
                    self.session,
                    update(TimeSlot)
                    .where(
                        TimeSlot.id.in_(slot_ids),
                        TimeSlot.is_booked.is_(False),
                        TimeSlot.reserved_booking_id.is_(None),
                    )
                    .values(is_blocked=True, block_reason=reason),
                )
                if changed != len(slot_ids):
                    # a booking claimed one of these slots after our check
                    raise ConflictError(
                        "Cannot block time slot - there are existing bookings in this time range",
                        conflicting_bookings=len(slot_ids) - changed,
                    )

            # parts of the range with no row get their own blocked row
            for gap_start, gap_end in uncovered(start, end, overlapping):
                slot = TimeSlot(
                    court_id=court.id,
                    date=day,
                    start_time=gap_start,
                    end_time=gap_end,
                    price=money(court.price_per_hour),
                    is_booked=False,
                    is_blocked=True,
                    block_reason=reason,
                )
                self.session.add(slot)
                self.session.flush()
                slot_ids.append(slot.id)

            log_event(
                "SLOT_BLOCK",
                user_id=actor.user_id,
                entity="court",
                entity_id=court.id,
                metadata={"date": day.isoformat(), "start": start, "end": end, "reason": reason, "slots": slot_ids},
                session=self.session,
            )

        logger.info("Blocked %s slot(s) on court %s %s %s-%s", len(slot_ids), court_id, day, start, end)
        return BlockResult(slots_affected=len(slot_ids), slot_ids=slot_ids)

    def unblock(self, actor, time_slot_id) -> TimeSlot:
        with transaction(self.session):
            slot = self.session.get(TimeSlot, time_slot_id)
            if slot is None:
                raise NotFoundError("Time slot not found")
            ensure_facility_owner(actor, slot.court.facility)

            if not slot.is_blocked:
                raise StateError("Time slot is not currently blocked")
            if slot.is_booked:
                raise ConflictError("Cannot unblock a booked time slot")

            slot.is_blocked = False
            slot.block_reason = None

            log_event(
                "SLOT_UNBLOCK",
                user_id=actor.user_id,
                entity="time_slot",
                entity_id=slot.id,
                session=self.session,
            )
        return slot

    def list_blocked(self, actor, court_id=None, from_date=None) -> list:
        q = (
            self.session.query(TimeSlot)
            .join(Court, TimeSlot.court_id == Court.id)
            .join(Facility, Court.facility_id == Facility.id)
            .filter(TimeSlot.is_blocked.is_(True))
        )
        if not actor.is_admin:
            q = q.filter(Facility.owner_user_id == actor.user_id)
        if court_id:
            q = q.filter(TimeSlot.court_id == court_id)
        q = q.filter(TimeSlot.date >= (parse_date(from_date) if from_date else self.clock.today()))
        return q.order_by(TimeSlot.date.asc(), TimeSlot.start_time.asc()).limit(500).all()
