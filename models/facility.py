from datetime import datetime
from models.db import db


class Facility(db.Model):
    __tablename__ = "facilities"

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    location = db.Column(db.String(160), nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    courts = db.relationship("Court", back_populates="facility", lazy="selectin")
    operating_hours = db.relationship(
        "OperatingHour",
        back_populates="facility",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def hours_by_weekday(self) -> dict:
        """Map weekday (0=Monday .. 6=Sunday) to its OperatingHour row."""
        return {oh.day_of_week: oh for oh in self.operating_hours}

    def hours_for(self, weekday: int):
        return self.hours_by_weekday().get(weekday)


class OperatingHour(db.Model):
    __tablename__ = "operating_hours"

    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(db.Integer, db.ForeignKey("facilities.id"), nullable=False, index=True)

    # 0 = Monday, same as date.weekday()
    day_of_week = db.Column(db.Integer, nullable=False)
    open_time = db.Column(db.String(5), nullable=True)   # "09:00"
    close_time = db.Column(db.String(5), nullable=True)  # "22:00"
    is_closed = db.Column(db.Boolean, default=False, nullable=False)

    facility = db.relationship("Facility", back_populates="operating_hours")

    __table_args__ = (
        db.UniqueConstraint("facility_id", "day_of_week", name="uq_operating_hours_day"),
    )
