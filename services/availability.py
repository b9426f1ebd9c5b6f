from errors import NotFoundError
from models.booking import ACTIVE_STATUSES, Booking
from models.court import Court
from models.slot import TimeSlot
from services.tx import money
from utils.timeparse import hourly_grid


class AvailabilityView:
    """Free/booked/blocked view of one court on one date."""

    def __init__(self, session, open_time="06:00", close_time="22:00", slot_minutes=60):
        self.session = session
        self.open_time = open_time
        self.close_time = close_time
        self.slot_minutes = slot_minutes

    def for_court(self, court_id, day) -> list:
        court = self.session.get(Court, court_id)
        if court is None:
            raise NotFoundError("Court not found")

        taken = {
            row.start_time
            for row in self.session.query(Booking.start_time).filter(
                Booking.court_id == court_id,
                Booking.booking_date == day,
                Booking.status.in_(ACTIVE_STATUSES),
            )
        }

        slots = (
            self.session.query(TimeSlot)
            .filter_by(court_id=court_id, date=day)
            .order_by(TimeSlot.start_time.asc())
            .all()
        )

        if slots:
            return [
                {
                    "time": s.start_time,
                    "end_time": s.end_time,
                    "available": s.is_free and s.start_time not in taken,
                    "blocked": s.is_blocked,
                    "price": str(money(s.price)),
                    "slot_id": s.id,
                }
                for s in slots
            ]

        # nothing generated yet: fall back to the default daily grid
        return [
            {
                "time": start,
                "end_time": end,
                "available": start not in taken,
                "blocked": False,
                "price": str(money(court.price_per_hour)),
                "slot_id": None,
            }
            for start, end in hourly_grid(self.open_time, self.close_time, self.slot_minutes)
        ]

    def is_available(self, court_id, day, start_time) -> bool:
        for entry in self.for_court(court_id, day):
            if entry["time"] == start_time:
                return entry["available"]
        return False
