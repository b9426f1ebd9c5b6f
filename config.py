import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as courtbook.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "courtbook.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Identity is resolved by the gateway in front of us
    IDENTITY_USER_HEADER = os.getenv("IDENTITY_USER_HEADER", "X-User-Id")
    IDENTITY_ROLE_HEADER = os.getenv("IDENTITY_ROLE_HEADER", "X-User-Role")

    # Facility wall clock (booking dates/times are local to this zone)
    FACILITY_TIMEZONE = os.getenv("FACILITY_TIMEZONE", "UTC")

    # Slot grid
    SLOT_DURATION_MINUTES = 60
    SLOT_HORIZON_DAYS = int(os.getenv("SLOT_HORIZON_DAYS", "30"))
    MAX_SLOT_HORIZON_DAYS = 90
    DEFAULT_OPEN_TIME = "06:00"
    DEFAULT_CLOSE_TIME = "22:00"

    # Cancellation / modification policy
    CANCEL_CUTOFF_HOURS = 24
    MODIFY_CUTOFF_HOURS = 24
    MODIFICATION_FEE = "50.00"

    # Pricing
    PLATFORM_FEE_RATE = "0.03"
    TAX_RATE = "0.18"
    CURRENCY = os.getenv("CURRENCY", "inr")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    CHECKOUT_SUCCESS_URL = os.getenv("CHECKOUT_SUCCESS_URL")
    CHECKOUT_CANCEL_URL = os.getenv("CHECKOUT_CANCEL_URL")
    CHECKOUT_EXPIRY_MINUTES = int(os.getenv("CHECKOUT_EXPIRY_MINUTES", "30"))  # Stripe minimum is 30

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False
