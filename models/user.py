from datetime import datetime
from models.db import db

ROLE_USER = "user"
ROLE_OWNER = "facility_owner"
ROLE_ADMIN = "admin"

ROLES = (ROLE_USER, ROLE_OWNER, ROLE_ADMIN)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    # identity is resolved upstream; this row only anchors bookings
    email = db.Column(db.String(255), unique=True, nullable=True, index=True)
    full_name = db.Column(db.String(120), nullable=True)
    phone_number = db.Column(db.String(30), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    anonymized_at = db.Column(db.DateTime, nullable=True)
