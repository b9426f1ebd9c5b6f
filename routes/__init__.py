from .health import health_bp
from .slots import slots_bp
from .booking import booking_bp
from .coupons import coupons_bp
from .payments import payments_bp
from .stripe_webhook import webhook_bp
