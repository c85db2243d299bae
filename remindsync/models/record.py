"""
Domain records for the reminder engine.

These are the validated, typed forms of what the local store and the remote
store keep as JSON-compatible maps. ``from_dict`` is the deserialization
boundary: unknown keys, missing required keys and wrongly typed values are
rejected here instead of failing later with attribute or type errors.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from remindsync.clock import format_instant, parse_instant
from remindsync.errors import ValidationError
from remindsync.models.frequency import FrequencySpec, TimeOfDay, frequency_from_dict


class ReminderStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    SNOOZED = "snoozed"


class SyncOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# Fields a change to which requires the trigger to be re-armed
SCHEDULING_FIELDS = ("frequency", "time_of_day", "status", "enable_notifications", "next_fire_at")


def _require(data: Dict[str, Any], key: str):
    if key not in data:
        raise ValidationError(f"Missing required field: {key}")
    return data[key]


def _expect(value, types, name: str):
    if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
        raise ValidationError(f"{name} has invalid type bool")
    if not isinstance(value, types):
        raise ValidationError(f"{name} has invalid type {type(value).__name__}")
    return value


def _instant(data: Dict[str, Any], key: str) -> Optional[datetime]:
    try:
        return parse_instant(data.get(key))
    except (TypeError, ValueError):
        raise ValidationError(f"{key} is not a valid timestamp: {data.get(key)!r}")


@dataclass
class ReminderRecord:
    """A reminder as owned by the local record store."""

    title: str
    category: str
    frequency: FrequencySpec
    time_of_day: TimeOfDay
    created_at: datetime
    id: Optional[int] = None
    description: str = ""
    status: ReminderStatus = ReminderStatus.ACTIVE
    enable_notifications: bool = True
    repeat_limit: int = 0
    completion_count: int = 0
    next_fire_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    snoozed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    needs_sync: bool = True
    remote_id: Optional[str] = None

    FIELDS = (
        "id", "title", "category", "description", "frequency", "time_of_day", "status",
        "enable_notifications", "repeat_limit", "completion_count", "next_fire_at",
        "last_completed_at", "completed_at", "snoozed_at", "created_at", "updated_at",
        "needs_sync", "remote_id",
    )
    REQUIRED = ("title", "category", "frequency", "time_of_day", "created_at")

    def __post_init__(self):
        if not isinstance(self.title, str) or not self.title.strip():
            raise ValidationError("Reminder title cannot be empty")
        if self.repeat_limit < 0:
            raise ValidationError("repeat_limit must be >= 0")
        if self.completion_count < 0:
            raise ValidationError("completion_count must be >= 0")

    @property
    def is_schedulable(self) -> bool:
        """Whether the trigger scheduler should hold a trigger for this record."""
        return (
            self.status in (ReminderStatus.ACTIVE, ReminderStatus.SNOOZED)
            and self.enable_notifications
            and self.next_fire_at is not None
        )

    @property
    def limit_reached(self) -> bool:
        return self.repeat_limit > 0 and self.completion_count >= self.repeat_limit

    def copy(self, **changes) -> "ReminderRecord":
        return replace(self, **changes)

    def scheduling_changed(self, other: "ReminderRecord") -> bool:
        return any(getattr(self, name) != getattr(other, name) for name in SCHEDULING_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "description": self.description,
            "frequency": self.frequency.to_dict(),
            "time_of_day": str(self.time_of_day),
            "status": self.status.value,
            "enable_notifications": self.enable_notifications,
            "repeat_limit": self.repeat_limit,
            "completion_count": self.completion_count,
            "next_fire_at": format_instant(self.next_fire_at),
            "last_completed_at": format_instant(self.last_completed_at),
            "completed_at": format_instant(self.completed_at),
            "snoozed_at": format_instant(self.snoozed_at),
            "created_at": format_instant(self.created_at),
            "updated_at": format_instant(self.updated_at),
            "needs_sync": self.needs_sync,
            "remote_id": self.remote_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReminderRecord":
        """
        Validate a map and build a record from it.

        Raises:
            ValidationError: on unknown keys, missing required keys or bad values
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Reminder must be a map, got {type(data).__name__}")
        unknown = set(data) - set(cls.FIELDS)
        if unknown:
            raise ValidationError(f"Unknown reminder fields: {sorted(unknown)}")
        for key in cls.REQUIRED:
            _require(data, key)

        try:
            status = ReminderStatus(data.get("status", ReminderStatus.ACTIVE.value))
        except ValueError:
            raise ValidationError(f"Invalid status: {data.get('status')!r}")

        record_id = data.get("id")
        if record_id is not None:
            _expect(record_id, int, "id")
        remote_id = data.get("remote_id")
        if remote_id is not None:
            _expect(remote_id, str, "remote_id")

        created_at = _instant(data, "created_at")
        if created_at is None:
            raise ValidationError("created_at cannot be null")

        return cls(
            id=record_id,
            title=_expect(data["title"], str, "title"),
            category=_expect(data["category"], str, "category"),
            description=_expect(data.get("description") or "", str, "description"),
            frequency=frequency_from_dict(data["frequency"]),
            time_of_day=TimeOfDay.parse(data["time_of_day"]),
            status=status,
            enable_notifications=_expect(data.get("enable_notifications", True), bool, "enable_notifications"),
            repeat_limit=_expect(data.get("repeat_limit", 0), int, "repeat_limit"),
            completion_count=_expect(data.get("completion_count", 0), int, "completion_count"),
            next_fire_at=_instant(data, "next_fire_at"),
            last_completed_at=_instant(data, "last_completed_at"),
            completed_at=_instant(data, "completed_at"),
            snoozed_at=_instant(data, "snoozed_at"),
            created_at=created_at,
            updated_at=_instant(data, "updated_at"),
            needs_sync=_expect(data.get("needs_sync", True), bool, "needs_sync"),
            remote_id=remote_id,
        )

    def to_remote_row(self) -> Dict[str, Any]:
        """Row form used by the remote ``reminders`` table."""
        row = {
            "local_id": self.id,
            "title": self.title,
            "category": self.category,
            "description": self.description,
            "frequency": self.frequency.to_dict(),
            "time": str(self.time_of_day),
            "status": self.status.value,
            "enable_notifications": self.enable_notifications,
            "repeat_limit": self.repeat_limit,
            "completion_count": self.completion_count,
            "next_occurrence_date_time": format_instant(self.next_fire_at),
            "last_completed": format_instant(self.last_completed_at),
            "completed_at": format_instant(self.completed_at),
            "snoozed_at": format_instant(self.snoozed_at),
            "created_at": format_instant(self.created_at),
            "updated_at": format_instant(self.updated_at),
        }
        if self.remote_id:
            row["id"] = self.remote_id
        return row

    def apply_remote_row(self, row: Dict[str, Any]) -> "ReminderRecord":
        """Return a copy of this record carrying the values of a remote row."""
        try:
            status = ReminderStatus(row.get("status", self.status.value))
        except ValueError:
            raise ValidationError(f"Invalid remote status: {row.get('status')!r}")
        next_fire_at = _instant(row, "next_occurrence_date_time")
        if status == ReminderStatus.COMPLETED:
            next_fire_at = None
        return self.copy(
            title=row.get("title", self.title),
            category=row.get("category", self.category),
            description=row.get("description") or "",
            frequency=frequency_from_dict(row["frequency"]) if row.get("frequency") else self.frequency,
            time_of_day=TimeOfDay.parse(row["time"]) if row.get("time") else self.time_of_day,
            status=status,
            enable_notifications=row.get("enable_notifications", self.enable_notifications),
            repeat_limit=row.get("repeat_limit", self.repeat_limit),
            completion_count=row.get("completion_count", self.completion_count),
            next_fire_at=next_fire_at,
            last_completed_at=_instant(row, "last_completed"),
            completed_at=_instant(row, "completed_at"),
            snoozed_at=_instant(row, "snoozed_at"),
            updated_at=_instant(row, "updated_at") or self.updated_at,
            remote_id=row.get("id") or self.remote_id,
        )


@dataclass
class SyncQueueItem:
    """A pending mutation waiting to be applied to the remote store."""

    operation: SyncOperation
    table: str
    payload: Dict[str, Any]
    enqueued_at: datetime
    record_id: Optional[int] = None
    base_updated_at: Optional[datetime] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    conflict: Optional[Dict[str, Any]] = None
    id: Optional[int] = None

    def is_due(self, now: datetime) -> bool:
        return self.next_retry_at is None or self.next_retry_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation.value,
            "table": self.table,
            "record_id": self.record_id,
            "payload": self.payload,
            "base_updated_at": format_instant(self.base_updated_at),
            "enqueued_at": format_instant(self.enqueued_at),
            "retry_count": self.retry_count,
            "next_retry_at": format_instant(self.next_retry_at),
            "last_error": self.last_error,
            "conflict": self.conflict,
        }


@dataclass
class DeadLetterItem:
    """A queue item retired from automatic retry, kept for manual review."""

    item: SyncQueueItem
    reason: str
    failed_at: datetime
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.to_dict()
        data.update({
            "id": self.id,
            "queue_item_id": self.item.id,
            "reason": self.reason,
            "failed_at": format_instant(self.failed_at),
        })
        return data


@dataclass
class HealthState:
    in_fallback_mode: bool = False
    background_permitted: bool = True
    reason: Optional[str] = None
    error_counts: Dict[str, int] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_fallback_mode": self.in_fallback_mode,
            "background_permitted": self.background_permitted,
            "reason": self.reason,
            "error_counts": dict(self.error_counts),
            "updated_at": format_instant(self.updated_at),
        }
