import logging
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class SmtpMailer:
    def __init__(self, host=None, port=587, username=None, password=None, from_email=None, use_tls=True):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.use_tls = use_tls

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config.get("SMTP_HOST"),
            port=config.get("SMTP_PORT", 587),
            username=config.get("SMTP_USERNAME"),
            password=config.get("SMTP_PASSWORD"),
            from_email=config.get("SMTP_FROM_EMAIL"),
            use_tls=config.get("SMTP_USE_TLS", True),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_email)

    def send(self, to_email: str, subject: str, body: str):
        if not self.configured:
            return False, "Email not configured"
        if not to_email:
            return False, "No recipient"

        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
            return True, None
        except (smtplib.SMTPException, OSError) as exc:
            return False, str(exc)


class Notifier:
    """
    Fire-and-forget hook invoked after a booking/slot change has committed.
    Delivery problems are logged; they never reach the caller.
    """

    SUBJECTS = {
        "BOOKING_CREATED": "Your court booking is reserved",
        "BOOKING_CONFIRMED": "Your court booking is confirmed",
        "BOOKING_CANCELLED": "Your court booking was cancelled",
        "BOOKING_MODIFIED": "Your court booking was rescheduled",
        "BOOKING_COMPLETED": "Thanks for playing",
        "BOOKING_NO_SHOW": "You missed your court booking",
    }

    def __init__(self, mailer=None, user_lookup=None):
        self.mailer = mailer
        self.user_lookup = user_lookup

    def booking_changed(self, booking, event: str):
        try:
            self._deliver(booking, event)
        except Exception:
            logger.exception("Notification failed: event=%s booking=%s", event, getattr(booking, "id", None))

    def _deliver(self, booking, event):
        if not self.mailer or not self.mailer.configured or not self.user_lookup:
            return
        user = self.user_lookup(booking.user_id)
        if not user or not user.email or user.anonymized_at:
            return
        subject = self.SUBJECTS.get(event, "Booking update")
        body = (
            f"Booking #{booking.id}: {booking.status}\n"
            f"Date: {booking.booking_date.isoformat()} {booking.start_time}-{booking.end_time}\n"
            f"Amount: {booking.final_amount}\n"
        )
        ok, err = self.mailer.send(user.email, subject, body)
        if not ok:
            logger.warning("Booking email not sent: booking=%s reason=%s", booking.id, err)
