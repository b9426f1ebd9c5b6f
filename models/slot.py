from datetime import datetime
from models.db import db

class TimeSlot(db.Model):
    __tablename__ = "time_slots"

    id = db.Column(db.Integer, primary_key=True)

    court_id = db.Column(db.Integer, db.ForeignKey("courts.id"), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.String(5), nullable=False)  # "HH:mm"
    end_time = db.Column(db.String(5), nullable=False)

    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    is_booked = db.Column(db.Boolean, default=False, nullable=False)
    is_blocked = db.Column(db.Boolean, default=False, nullable=False)
    block_reason = db.Column(db.String(255), nullable=True)

    # Booking currently holding the slot (PENDING or CONFIRMED), null when free
    reserved_booking_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    court = db.relationship("Court")

    __table_args__ = (
        # One slot per court/date/start
        db.UniqueConstraint("court_id", "date", "start_time", name="uq_court_timeslot"),
        db.CheckConstraint("NOT (is_booked AND is_blocked)", name="ck_slot_booked_xor_blocked"),
    )

    @property
    def is_free(self) -> bool:
        return not (self.is_booked or self.is_blocked or self.reserved_booking_id)
