"""
Next-occurrence computation for every frequency kind.

Times of day are wall-clock times in the calculator's timezone, so a daily
09:00 reminder stays at 09:00 across DST changes. Interval kinds (hourly,
custom, minutely) add elapsed time instead.
"""
import calendar
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from remindsync.clock import as_utc
from remindsync.models.frequency import (
    Custom,
    Daily,
    FrequencySpec,
    Hourly,
    Minutely,
    Monthly,
    Once,
    TimeOfDay,
    Weekly,
)

MIN_AHEAD = timedelta(minutes=1)

UNIT_DELTAS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _at(day: date, time_of_day: TimeOfDay, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(time_of_day.hour, time_of_day.minute), tzinfo=tz)


def _elapsed(reference: datetime, delta: timedelta) -> datetime:
    # Aware arithmetic on the same tzinfo is wall-clock, go through UTC instead
    return (reference.astimezone(timezone.utc) + delta).astimezone(reference.tzinfo)


def _month_day(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


class RecurrenceCalculator:
    """Pure next-fire computation. Holds no state besides the user timezone."""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz or timezone.utc

    def _localize(self, reference: datetime) -> datetime:
        return as_utc(reference).astimezone(self.tz)

    def compute_next(
        self, spec: FrequencySpec, time_of_day: TimeOfDay, reference: datetime
    ) -> Optional[datetime]:
        """
        Compute the next fire instant strictly derived from ``reference``.

        Args:
            spec: Frequency of the reminder
            time_of_day: Wall-clock time used by once/daily/weekly/monthly
            reference: The instant to compute from, usually now

        Returns:
            The next fire instant in the calculator's timezone, or None when a
            one-time reminder is already in the past
        """
        ref = self._localize(reference)
        today = ref.date()

        if isinstance(spec, Once):
            candidate = _at(spec.date, time_of_day, self.tz)
            return None if candidate < ref else candidate

        if isinstance(spec, Daily):
            candidate = _at(today, time_of_day, self.tz)
            if candidate - ref < MIN_AHEAD:
                candidate = _at(today + timedelta(days=1), time_of_day, self.tz)
            return candidate

        if isinstance(spec, Weekly):
            candidate = _at(today, time_of_day, self.tz)
            if today.isoweekday() in spec.selected_weekdays and candidate - ref >= MIN_AHEAD:
                return candidate
            for offset in range(1, 8):
                day = today + timedelta(days=offset)
                if day.isoweekday() in spec.selected_weekdays:
                    return _at(day, time_of_day, self.tz)
            # Unreachable, Weekly always carries at least one weekday
            return None

        if isinstance(spec, Monthly):
            candidate = _at(_month_day(today.year, today.month, spec.day_of_month), time_of_day, self.tz)
            if candidate <= ref:
                if today.month == 12:
                    year, month = today.year + 1, 1
                else:
                    year, month = today.year, today.month + 1
                candidate = _at(_month_day(year, month, spec.day_of_month), time_of_day, self.tz)
            return candidate

        if isinstance(spec, Hourly):
            top_of_hour = ref.replace(minute=0, second=0, microsecond=0)
            return _elapsed(top_of_hour, timedelta(hours=1))

        if isinstance(spec, Custom):
            return _elapsed(ref, UNIT_DELTAS[spec.interval_unit] * spec.interval_value)

        if isinstance(spec, Minutely):
            return _elapsed(ref, timedelta(minutes=spec.minutes_from_now))

        raise TypeError(f"Unsupported frequency: {spec!r}")

    def compute_next_after_completion(
        self, spec: FrequencySpec, time_of_day: TimeOfDay, now: datetime
    ) -> Optional[datetime]:
        """Next fire after the user completed an occurrence at ``now``."""
        ref = self._localize(now)
        if isinstance(spec, Daily):
            return _at(ref.date() + timedelta(days=1), time_of_day, self.tz)
        if isinstance(spec, Hourly):
            return _elapsed(ref, timedelta(hours=1))
        return self.compute_next(spec, time_of_day, ref)

    def original_proposed_time(
        self, spec: FrequencySpec, time_of_day: TimeOfDay, now: datetime
    ) -> datetime:
        """What the user meant before any lead-time or conflict adjustment."""
        ref = self._localize(now)
        if isinstance(spec, Custom) and spec.interval_unit == "minutes":
            return _elapsed(ref, timedelta(minutes=spec.interval_value))
        if isinstance(spec, Minutely):
            return _elapsed(ref, timedelta(minutes=spec.minutes_from_now))
        return _at(ref.date(), time_of_day, self.tz)

    def describe_next(self, instant: Optional[datetime], now: datetime) -> str:
        """Short human description such as "In 5 minutes" or "Tomorrow at 9:00 AM"."""
        if instant is None:
            return "No upcoming occurrence"
        local = self._localize(instant)
        difference = local - self._localize(now)
        if difference < timedelta(0):
            return "Overdue"

        minutes = int(difference.total_seconds() // 60)
        if minutes < 1:
            return "Now"
        if minutes < 60:
            return "In 1 minute" if minutes == 1 else f"In {minutes} minutes"

        days = difference.days
        if days == 0:
            hours = minutes // 60
            if hours < 12:
                return "In 1 hour" if hours == 1 else f"In {hours} hours"
            return f"Today at {self._format_time(local)}"
        if days == 1:
            return f"Tomorrow at {self._format_time(local)}"
        if days < 7:
            return f"{WEEKDAY_NAMES[local.weekday()]} at {self._format_time(local)}"
        return f"{local.day}/{local.month}/{local.year} at {self._format_time(local)}"

    @staticmethod
    def _format_time(value: datetime) -> str:
        hour = value.hour
        period = "PM" if hour >= 12 else "AM"
        display_hour = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
        return f"{display_hour}:{value.minute:02d} {period}"
