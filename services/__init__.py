from flask import current_app

from models import db
from models.user import User
from services.availability import AvailabilityView
from services.booking_lifecycle import BookingLifecycle
from services.checkout import CheckoutService
from services.coupons import CouponEngine
from services.payment_reconciler import PaymentReconciler
from services.schedule_blocker import ScheduleBlocker
from services.slot_generator import SlotGenerator
from utils.clock import Clock
from utils.emailer import Notifier, SmtpMailer

EXTENSION_KEY = "reservations"


class ReservationServices:
    """The reservation core, wired once per application."""

    def __init__(self, session, clock, notifier, settings):
        self.session = session
        self.clock = clock
        self.notifier = notifier

        slot_minutes = int(settings.get("SLOT_DURATION_MINUTES", 60))
        self.coupons = CouponEngine(session, clock)
        self.slot_generator = SlotGenerator(
            session, clock,
            slot_minutes=slot_minutes,
            max_days=int(settings.get("MAX_SLOT_HORIZON_DAYS", 90)),
        )
        self.availability = AvailabilityView(
            session,
            open_time=settings.get("DEFAULT_OPEN_TIME", "06:00"),
            close_time=settings.get("DEFAULT_CLOSE_TIME", "22:00"),
            slot_minutes=slot_minutes,
        )
        self.blocker = ScheduleBlocker(session, clock)
        self.bookings = BookingLifecycle(session, clock, self.coupons, notifier, settings)
        self.reconciler = PaymentReconciler(session, clock, self.coupons, notifier)
        self.checkout = CheckoutService(session, self.reconciler, settings)


def build_services(app, session=None, clock=None, notifier=None) -> ReservationServices:
    session = session or db.session
    clock = clock or Clock(app.config.get("FACILITY_TIMEZONE", "UTC"))
    if notifier is None:
        notifier = Notifier(
            mailer=SmtpMailer.from_config(app.config),
            user_lookup=lambda user_id: session.get(User, user_id),
        )
    services = ReservationServices(session, clock, notifier, app.config)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> ReservationServices:
    return current_app.extensions[EXTENSION_KEY]
