"""
Calling Window Model
Daily local-time window and date range during which a campaign may dial
"""
from datetime import date, datetime, time, timedelta
from typing import Optional

import pytz
from pydantic import BaseModel, Field

from callqueue.core.exceptions import ValidationError

MIN_WINDOW_MINUTES = 60


def parse_clock_time(value: str) -> time:
    """Parse HH:MM or HH:MM:SS into a time."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time format: {value!r} (expected HH:MM or HH:MM:SS)")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise ValueError(f"Invalid time format: {value!r} (expected HH:MM or HH:MM:SS)")
    hour, minute = numbers[0], numbers[1]
    second = numbers[2] if len(numbers) == 3 else 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return time(hour, minute, second)


def is_valid_timezone(name: str) -> bool:
    try:
        pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError:
        return False
    return True


class CallingWindow(BaseModel):
    """
    A campaign's dialing window.

    Times are local clock times in `timezone`; the date range is inclusive
    and also evaluated in `timezone`.
    """

    first_call_time: str = Field(default="09:00", description="Window opens (HH:MM)")
    last_call_time: str = Field(default="17:00", description="Window closes (HH:MM)")
    timezone: str = Field(default="UTC", description="IANA timezone, e.g. 'America/New_York'")
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @classmethod
    def from_campaign(cls, campaign) -> "CallingWindow":
        return cls(
            first_call_time=campaign.first_call_time,
            last_call_time=campaign.last_call_time,
            timezone=campaign.timezone or "UTC",
            start_date=campaign.start_date,
            end_date=campaign.end_date,
        )

    def check(self) -> None:
        """Raise ValidationError when the window is unusable."""
        if not self.first_call_time or not self.last_call_time:
            raise ValidationError("Both first_call_time and last_call_time are required")
        try:
            first = parse_clock_time(self.first_call_time)
            last = parse_clock_time(self.last_call_time)
        except ValueError as e:
            raise ValidationError(str(e))

        if first >= last:
            raise ValidationError("first_call_time must be before last_call_time")

        span = datetime.combine(date.min, last) - datetime.combine(date.min, first)
        if span < timedelta(minutes=MIN_WINDOW_MINUTES):
            raise ValidationError("Calling window must be at least 1 hour")

        if not is_valid_timezone(self.timezone):
            raise ValidationError(f"Unknown timezone: {self.timezone}")

        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValidationError("end_date must be after start_date")

    def _tz(self):
        try:
            return pytz.timezone(self.timezone)
        except pytz.exceptions.UnknownTimeZoneError:
            return pytz.UTC

    def to_local(self, moment: datetime) -> datetime:
        """Convert a naive-UTC (or aware) datetime into the window timezone."""
        tz = self._tz()
        if moment.tzinfo is None:
            moment = pytz.UTC.localize(moment)
        return moment.astimezone(tz)

    def is_within_time_window(self, check_time: datetime) -> tuple[bool, str]:
        """
        Check whether `check_time` falls inside the window.

        Args:
            check_time: Moment to check, naive UTC or timezone-aware

        Returns:
            (is_allowed, reason)
        """
        local = self.to_local(check_time)

        if self.start_date and local.date() < self.start_date:
            return False, f"before_start_date_{self.start_date.isoformat()}"
        if self.end_date and local.date() > self.end_date:
            return False, f"after_end_date_{self.end_date.isoformat()}"

        try:
            start_time = parse_clock_time(self.first_call_time)
            end_time = parse_clock_time(self.last_call_time)
        except ValueError:
            return False, "invalid_time_format"

        current_time = local.time().replace(tzinfo=None)
        if start_time <= current_time <= end_time:
            return True, "within_time_window"
        return False, f"outside_time_window_{self.first_call_time}_{self.last_call_time}"

    def first_dispatch_time(self, now: datetime) -> datetime:
        """Earliest scheduled_for for newly enqueued contacts (naive UTC)."""
        if not self.start_date:
            return now
        tz = self._tz()
        opening = tz.localize(datetime.combine(self.start_date, time(0, 0)))
        opening_utc = opening.astimezone(pytz.UTC).replace(tzinfo=None)
        return max(now, opening_utc)
