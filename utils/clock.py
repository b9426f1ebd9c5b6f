from datetime import datetime, timezone
from zoneinfo import ZoneInfo


class Clock:
    """
    Wall clock of the facilities. Booking dates and HH:mm times are local
    to FACILITY_TIMEZONE, so cutoff math compares against local naive time.
    """

    def __init__(self, tz_name: str = "UTC"):
        self.tz_name = tz_name or "UTC"
        self._tz = ZoneInfo(self.tz_name)

    def now(self) -> datetime:
        return datetime.now(self._tz).replace(tzinfo=None)

    def utcnow(self) -> datetime:
        # naive UTC, the form created_at columns are stored in
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def today(self):
        return self.now().date()


class FixedClock(Clock):
    """Clock pinned to a given instant (used by tests and replay tooling)."""

    def __init__(self, instant: datetime):
        super().__init__("UTC")
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def utcnow(self) -> datetime:
        return self.instant

    def advance(self, delta):
        self.instant = self.instant + delta
        return self.instant
