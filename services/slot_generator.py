import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from errors import NotFoundError, ValidationError
from models.facility import Facility
from models.slot import TimeSlot
from services.tx import money, transaction
from utils.timeparse import hourly_grid

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    slots_created: int = 0
    facilities_processed: int = 0
    courts_processed: int = 0
    days: int = 0

    def to_dict(self) -> dict:
        return {
            "total_slots_created": self.slots_created,
            "facilities_processed": self.facilities_processed,
            "courts_processed": self.courts_processed,
            "days_generated": self.days,
        }


class SlotGenerator:
    """
    Materialises hourly TimeSlot rows from each facility's weekly operating
    hours. Re-running over the same horizon creates nothing new.
    """

    def __init__(self, session, clock, slot_minutes=60, max_days=90):
        self.session = session
        self.clock = clock
        self.slot_minutes = slot_minutes
        self.max_days = max_days

    def generate(self, owner_id=None, days=30, facility_id=None) -> GenerationResult:
        try:
            days = int(days)
        except (TypeError, ValueError):
            raise ValidationError("days must be an integer")
        if days < 1 or days > self.max_days:
            raise ValidationError(f"days must be between 1 and {self.max_days}")

        facilities = self._facilities(owner_id, facility_id)
        result = GenerationResult(days=days)
        today = self.clock.today()

        with transaction(self.session):
            for facility in facilities:
                courts = [c for c in facility.courts if c.is_active]
                hours = facility.hours_by_weekday()
                if not courts or not hours:
                    logger.info("Skipping facility %s: no active courts or operating hours", facility.id)
                    continue

                result.facilities_processed += 1
                for court in courts:
                    result.courts_processed += 1
                    existing = self._existing_keys(court.id, today, today + timedelta(days=days))
                    for offset in range(days):
                        day = today + timedelta(days=offset)
                        oh = hours.get(day.weekday())
                        if oh is None or oh.is_closed or not oh.open_time or not oh.close_time:
                            continue
                        for start, end in hourly_grid(oh.open_time, oh.close_time, self.slot_minutes):
                            if (day, start) in existing:
                                continue
                            if self._insert(court, day, start, end):
                                result.slots_created += 1

        logger.info(
            "Generated %s slots across %s facilities (%s days)",
            result.slots_created, result.facilities_processed, days,
        )
        return result

    def _facilities(self, owner_id, facility_id):
        q = self.session.query(Facility).filter(Facility.is_active.is_(True))
        if owner_id is not None:
            q = q.filter(Facility.owner_user_id == owner_id)
        if facility_id is not None:
            q = q.filter(Facility.id == facility_id)
        rows = q.order_by(Facility.id.asc()).all()
        if facility_id is not None and not rows:
            raise NotFoundError("Facility not found")
        return rows

    def _existing_keys(self, court_id, start_day, end_day) -> set:
        rows = (
            self.session.query(TimeSlot.date, TimeSlot.start_time)
            .filter(
                TimeSlot.court_id == court_id,
                TimeSlot.date >= start_day,
                TimeSlot.date < end_day,
            )
            .all()
        )
        return {(r.date, r.start_time) for r in rows}

    def _insert(self, court, day, start, end) -> bool:
        slot = TimeSlot(
            court_id=court.id,
            date=day,
            start_time=start,
            end_time=end,
            price=money(court.price_per_hour),
            is_booked=False,
            is_blocked=False,
        )
        # savepoint so a concurrent run inserting the same slot only loses this row
        try:
            with self.session.begin_nested():
                self.session.add(slot)
        except IntegrityError:
            logger.debug("Slot %s %s %s created concurrently", court.id, day, start)
            return False
        return True
