from datetime import datetime
from models.db import db

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
COMPLETED = "COMPLETED"
NO_SHOW = "NO_SHOW"

BOOKING_STATUSES = (PENDING, CONFIRMED, CANCELLED, COMPLETED, NO_SHOW)
ACTIVE_STATUSES = (PENDING, CONFIRMED)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    facility_id = db.Column(db.Integer, db.ForeignKey("facilities.id"), nullable=False, index=True)
    court_id = db.Column(db.Integer, db.ForeignKey("courts.id"), nullable=False, index=True)
    time_slot_id = db.Column(db.Integer, db.ForeignKey("time_slots.id"), nullable=True, index=True)

    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)

    booking_date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.String(5), nullable=False)
    end_time = db.Column(db.String(5), nullable=False)
    total_hours = db.Column(db.Numeric(5, 2), nullable=False)

    # money in major units (e.g. INR), 2 decimals
    price_per_hour = db.Column(db.Numeric(10, 2), nullable=False)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    modification_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    final_amount = db.Column(db.Numeric(10, 2), nullable=False)

    special_requests = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    no_show_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    court = db.relationship("Court")
    facility = db.relationship("Facility")
    time_slot = db.relationship("TimeSlot", foreign_keys=[time_slot_id])
    payment = db.relationship("Payment", back_populates="booking", uselist=False)
    review = db.relationship("Review", back_populates="booking", uselist=False)

    __mapper_args__ = {"version_id_col": version}
