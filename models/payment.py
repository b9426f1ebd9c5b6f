from datetime import datetime
from models.db import db

PAYMENT_PENDING = "PENDING"
PAYMENT_COMPLETED = "COMPLETED"
PAYMENT_FAILED = "FAILED"
PAYMENT_CANCELLED = "CANCELLED"
PAYMENT_REFUNDED = "REFUNDED"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, unique=True, index=True)

    status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    platform_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="INR")

    gateway = db.Column(db.String(20), nullable=False, default="STRIPE")
    gateway_order_id = db.Column(db.String(255), nullable=True, unique=True, index=True)    # checkout session
    gateway_payment_id = db.Column(db.String(255), nullable=True, unique=True, index=True)  # payment intent
    transaction_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    booking = db.relationship("Booking", back_populates="payment")
