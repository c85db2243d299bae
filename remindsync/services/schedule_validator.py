import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from remindsync.clock import Clock, as_utc, utc_now
from remindsync.models.frequency import Custom, FrequencySpec, Minutely, TimeOfDay
from remindsync.services.recurrence import RecurrenceCalculator

logger = logging.getLogger(__name__)


class ScheduleTimeValidator:
    """Minimum lead time and conflict adjustment on top of the calculator."""

    def __init__(
        self,
        calculator: RecurrenceCalculator,
        clock: Clock = utc_now,
        min_lead: timedelta = timedelta(minutes=1),
    ):
        self.calculator = calculator
        self.clock = clock
        self.min_lead = min_lead

    def _now(self) -> datetime:
        return as_utc(self.clock()).astimezone(self.calculator.tz)

    def validate(self, candidate: datetime) -> datetime:
        """Push ``candidate`` out to now + lead time if it is closer than that."""
        now = self._now()
        if candidate - now < self.min_lead:
            adjusted = now + self.min_lead
            logger.info(f"Schedule time {candidate.isoformat()} is within lead time, using {adjusted.isoformat()}")
            return adjusted
        return candidate

    def adjust_for_conflict(self, candidate: datetime, interactive: bool = True) -> Tuple[datetime, bool]:
        """
        Resolve a candidate that is in the past or too close to now.

        Args:
            candidate: Proposed fire instant
            interactive: Whether a user will be asked to confirm the adjustment

        Returns:
            Tuple of (adjusted instant, whether it was adjusted)
        """
        now = self._now()
        local = candidate.astimezone(self.calculator.tz)
        adjusted = local

        if local < now:
            if local.date() == now.date():
                adjusted = local + timedelta(days=1)
            else:
                adjusted = now + self.min_lead
        elif local - now < self.min_lead:
            adjusted = now + self.min_lead

        was_adjusted = adjusted != local
        if was_adjusted and not interactive:
            logger.info(f"Adjusted schedule time {local.isoformat()} to {adjusted.isoformat()}")
        return adjusted, was_adjusted

    def proposed_schedule_time(self, spec: FrequencySpec, time_of_day: TimeOfDay) -> Optional[datetime]:
        """First fire from now, before the lead-time check."""
        now = self._now()
        if isinstance(spec, Minutely):
            return now + timedelta(minutes=spec.minutes_from_now)
        if isinstance(spec, Custom) and spec.interval_unit == "minutes":
            return now + timedelta(minutes=spec.interval_value)
        return self.calculator.compute_next(spec, time_of_day, now)

    def precise_schedule_time(self, spec: FrequencySpec, time_of_day: TimeOfDay) -> Optional[datetime]:
        """Schedule time from now for minute-granular frequencies, validated for lead time."""
        proposed = self.proposed_schedule_time(spec, time_of_day)
        return self.validate(proposed) if proposed is not None else None

    def next_fire(self, spec: FrequencySpec, time_of_day: TimeOfDay, reference: Optional[datetime] = None) -> Optional[datetime]:
        """Calculator result for ``reference`` (default now) with lead time applied."""
        candidate = self.calculator.compute_next(spec, time_of_day, reference or self._now())
        return self.validate(candidate) if candidate is not None else None
