from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event

from app import create_app
from config import Config
from models import db, User, Facility, OperatingHour, Court, Coupon
from models.coupon import PERCENTAGE
from models.user import ROLE_ADMIN, ROLE_OWNER, ROLE_USER
from utils.auth_context import Actor
from utils.clock import FixedClock
from utils.emailer import Notifier

# Monday morning; "today" for every test
NOW = datetime(2026, 3, 2, 8, 0)
TODAY = NOW.date()
TOMORROW = TODAY + timedelta(days=1)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    STRIPE_SECRET_KEY = "sk_test_123"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    CHECKOUT_SUCCESS_URL = "https://courts.example/pay/success"
    CHECKOUT_CANCEL_URL = "https://courts.example/pay/cancel"
    SMTP_HOST = None
    LOG_LEVEL = "WARNING"


class RecordingNotifier(Notifier):
    """Notifier that also remembers (event, booking_id) pairs for assertions."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def booking_changed(self, booking, event: str):
        self.sent.append((event, booking.id))
        super().booking_changed(booking, event)


def _sqlite_savepoints(engine):
    # let SQLAlchemy own BEGIN so SAVEPOINT works with pysqlite
    @event.listens_for(engine, "connect")
    def _connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(clock, notifier):
    app = create_app(TestConfig, clock=clock, notifier=notifier)
    with app.app_context():
        _sqlite_savepoints(db.engine)
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["reservations"]


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(role=ROLE_USER, email=None):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            full_name=f"User {counter['n']}",
            role=role,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def owner(make_user):
    return make_user(role=ROLE_OWNER)


@pytest.fixture
def player(make_user):
    return make_user()


@pytest.fixture
def make_facility(app):
    def _make(owner, open_time="09:00", close_time="12:00", price="500.00", closed_days=(), courts=1):
        facility = Facility(owner_user_id=owner.id, name="Downtown Arena", location="Main St")
        db.session.add(facility)
        db.session.flush()
        for weekday in range(7):
            db.session.add(OperatingHour(
                facility_id=facility.id,
                day_of_week=weekday,
                open_time=open_time,
                close_time=close_time,
                is_closed=weekday in closed_days,
            ))
        for i in range(courts):
            db.session.add(Court(
                facility_id=facility.id,
                name=f"Court {i + 1}",
                sport="futsal",
                price_per_hour=Decimal(price),
            ))
        db.session.commit()
        return facility

    return _make


@pytest.fixture
def court(owner, make_facility):
    facility = make_facility(owner)
    return facility.courts[0]


@pytest.fixture
def make_coupon(app):
    def _make(code="SAVE20", discount_type=PERCENTAGE, value="20", **fields):
        coupon = Coupon(
            code=code,
            name=fields.pop("name", "Test coupon"),
            discount_type=discount_type,
            discount_value=Decimal(value),
            current_usage=fields.pop("current_usage", 0),
            valid_from=fields.pop("valid_from", NOW - timedelta(days=1)),
            valid_until=fields.pop("valid_until", NOW + timedelta(days=30)),
            **fields,
        )
        db.session.add(coupon)
        db.session.commit()
        return coupon

    return _make


def actor_for(user, role=None) -> Actor:
    return Actor(user_id=user.id, role=role or user.role)


def admin_actor() -> Actor:
    return Actor(user_id=999, role=ROLE_ADMIN)


def headers_for(user, role=None) -> dict:
    return {"X-User-Id": str(user.id), "X-User-Role": role or user.role}


def day_str(day: date) -> str:
    return day.isoformat()
