from .db import db
from .user import User
from .facility import Facility, OperatingHour
from .court import Court
from .slot import TimeSlot
from .booking import Booking
from .payment import Payment
from .coupon import Coupon, BookingCoupon
from .review import Review
from .audit_log import AuditLog
