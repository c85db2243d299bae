"""
Frequency specifications for reminders.

A frequency is a tagged union: each kind is its own frozen dataclass and
``frequency_from_dict`` is the only place that understands the stored
spellings (``type`` or legacy ``id`` tag, ``interval``/``intervalValue``,
``unit``/``intervalUnit``, ``selectedDays``).
"""
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, FrozenSet, Union

from remindsync.errors import ValidationError

INTERVAL_UNITS = ("minutes", "hours", "days")


@dataclass(frozen=True)
class TimeOfDay:
    hour: int
    minute: int

    def __post_init__(self):
        if not isinstance(self.hour, int) or not 0 <= self.hour <= 23:
            raise ValidationError(f"Invalid hour: {self.hour!r}")
        if not isinstance(self.minute, int) or not 0 <= self.minute <= 59:
            raise ValidationError(f"Invalid minute: {self.minute!r}")

    @classmethod
    def parse(cls, value: Union[str, "TimeOfDay"]) -> "TimeOfDay":
        """Parse an ``HH:MM`` string."""
        if isinstance(value, TimeOfDay):
            return value
        if not isinstance(value, str) or ":" not in value:
            raise ValidationError(f"Invalid time of day: {value!r}")
        hour, _, minute = value.partition(":")
        try:
            return cls(int(hour), int(minute))
        except ValueError:
            raise ValidationError(f"Invalid time of day: {value!r}")

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Once:
    date: date
    kind = "once"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "date": self.date.isoformat()}


@dataclass(frozen=True)
class Daily:
    kind = "daily"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind}


@dataclass(frozen=True)
class Weekly:
    selected_weekdays: FrozenSet[int]
    kind = "weekly"

    def __post_init__(self):
        days = frozenset(self.selected_weekdays)
        if not days:
            raise ValidationError("Weekly frequency needs at least one weekday")
        if any(not isinstance(d, int) or not 1 <= d <= 7 for d in days):
            raise ValidationError(f"Weekdays must be ISO numbers 1..7, got {sorted(days)}")
        object.__setattr__(self, "selected_weekdays", days)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "selectedDays": sorted(self.selected_weekdays)}


@dataclass(frozen=True)
class Monthly:
    day_of_month: int
    kind = "monthly"

    def __post_init__(self):
        if not isinstance(self.day_of_month, int) or not 1 <= self.day_of_month <= 31:
            raise ValidationError(f"Invalid day of month: {self.day_of_month!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "dayOfMonth": self.day_of_month}


@dataclass(frozen=True)
class Hourly:
    kind = "hourly"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind}


@dataclass(frozen=True)
class Custom:
    interval_value: int
    interval_unit: str
    kind = "custom"

    def __post_init__(self):
        if not isinstance(self.interval_value, int) or self.interval_value < 1:
            raise ValidationError(f"Invalid interval value: {self.interval_value!r}")
        if self.interval_unit not in INTERVAL_UNITS:
            raise ValidationError(f"Invalid interval unit: {self.interval_unit!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "intervalValue": self.interval_value,
            "intervalUnit": self.interval_unit,
        }


@dataclass(frozen=True)
class Minutely:
    """Diagnostic frequency: fire a fixed number of minutes from now."""

    minutes_from_now: int = 1
    kind = "minutely"

    def __post_init__(self):
        if not isinstance(self.minutes_from_now, int) or self.minutes_from_now < 1:
            raise ValidationError(f"Invalid minutesFromNow: {self.minutes_from_now!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "minutesFromNow": self.minutes_from_now}


FrequencySpec = Union[Once, Daily, Weekly, Monthly, Hourly, Custom, Minutely]


def _first(data: Dict[str, Any], *keys: str):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _require_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    return value


def frequency_from_dict(data: Dict[str, Any]) -> FrequencySpec:
    """
    Build a FrequencySpec from its stored map form.

    Args:
        data: Map with a ``type`` (or legacy ``id``) tag

    Returns:
        The matching frequency variant

    Raises:
        ValidationError: on unknown tags or missing/invalid fields
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Frequency must be a map, got {type(data).__name__}")

    kind = _first(data, "type", "id")
    if kind == "once":
        raw_date = data.get("date")
        if not raw_date:
            raise ValidationError("Once frequency requires a date")
        try:
            # Accept full ISO timestamps too, only the date part matters
            return Once(date.fromisoformat(str(raw_date)[:10]))
        except ValueError:
            raise ValidationError(f"Invalid date for once frequency: {raw_date!r}")
    if kind == "daily":
        return Daily()
    if kind == "weekly":
        days = _first(data, "selectedDays", "selectedWeekdays")
        if not isinstance(days, (list, tuple, set, frozenset)):
            raise ValidationError("Weekly frequency requires selectedDays")
        return Weekly(frozenset(_require_int(d, "weekday") for d in days))
    if kind == "monthly":
        return Monthly(_require_int(data.get("dayOfMonth"), "dayOfMonth"))
    if kind == "hourly":
        return Hourly()
    if kind == "custom":
        value = _require_int(_first(data, "intervalValue", "interval"), "intervalValue")
        unit = _first(data, "intervalUnit", "unit")
        return Custom(value, unit)
    if kind == "minutely":
        return Minutely(_require_int(data.get("minutesFromNow", 1), "minutesFromNow"))

    raise ValidationError(f"Unknown frequency type: {kind!r}")
