from datetime import datetime
from models.db import db

PERCENTAGE = "PERCENTAGE"
FLAT = "FLAT"


class Coupon(db.Model):
    __tablename__ = "coupons"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False, index=True)  # stored uppercase
    name = db.Column(db.String(120), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    discount_type = db.Column(db.String(20), nullable=False, default=PERCENTAGE)
    discount_value = db.Column(db.Numeric(10, 2), nullable=False)
    min_booking_amount = db.Column(db.Numeric(10, 2), nullable=True)
    max_discount_amount = db.Column(db.Numeric(10, 2), nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)
    user_usage_limit = db.Column(db.Integer, nullable=True)
    current_usage = db.Column(db.Integer, nullable=False, default=0)

    valid_from = db.Column(db.DateTime, nullable=False)
    valid_until = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class BookingCoupon(db.Model):
    __tablename__ = "booking_coupons"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, unique=True, index=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=False, index=True)
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    coupon = db.relationship("Coupon")
