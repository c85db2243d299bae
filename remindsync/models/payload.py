import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from remindsync.clock import format_instant, parse_instant

PAYLOAD_VERSION = 1


class NotificationAction:
    """Supported notification actions."""

    TRIGGER = "trigger"
    SNOOZE = "snooze"
    COMPLETE = "complete"
    DISMISS = "dismiss"

    ALL = (TRIGGER, SNOOZE, COMPLETE, DISMISS)

    @classmethod
    def is_valid(cls, action: str) -> bool:
        return action in cls.ALL


class NotificationPayloadError(ValueError):
    pass


@dataclass
class NotificationPayload:
    """What the notification renderer receives when a reminder fires."""

    record_id: int
    title: str
    category: str
    action: str = NotificationAction.TRIGGER
    scheduled_at: Optional[datetime] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_map(self) -> Dict[str, Any]:
        data = {
            "id": self.record_id,
            "title": self.title,
            "category": self.category,
            "action": self.action,
            "version": PAYLOAD_VERSION,
        }
        if self.scheduled_at is not None:
            data["scheduledTime"] = format_instant(self.scheduled_at)
        if self.additional_data:
            data["additionalData"] = self.additional_data
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_map())

    def to_legacy(self) -> str:
        return f"{self.record_id}|{self.title}|{self.category}"

    @classmethod
    def from_map(cls, data: Dict[str, Any]) -> "NotificationPayload":
        record_id = data.get("id")
        if isinstance(record_id, bool) or not isinstance(record_id, int):
            raise NotificationPayloadError("Invalid or missing reminder ID")
        for key in ("title", "category", "action"):
            value = data.get(key)
            if not isinstance(value, str) or not value:
                raise NotificationPayloadError(f"Invalid or missing {key}")
        if not NotificationAction.is_valid(data["action"]):
            raise NotificationPayloadError(f"Invalid action type: {data['action']}")

        try:
            scheduled_at = parse_instant(data.get("scheduledTime"))
        except (TypeError, ValueError):
            raise NotificationPayloadError(f"Invalid scheduled time format: {data.get('scheduledTime')}")

        return cls(
            record_id=record_id,
            title=data["title"],
            category=data["category"],
            action=data["action"],
            scheduled_at=scheduled_at,
            additional_data=data.get("additionalData") or {},
        )

    @classmethod
    def from_json(cls, raw: str) -> "NotificationPayload":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise NotificationPayloadError(f"Failed to parse JSON payload: {e}")
        if not isinstance(data, dict):
            raise NotificationPayloadError("Payload must be a JSON object")
        return cls.from_map(data)

    @classmethod
    def from_legacy(cls, raw: str) -> Optional["NotificationPayload"]:
        """Parse the legacy ``id|title|category`` form, returning None if it does not match."""
        parts = raw.split("|")
        if len(parts) < 3:
            return None
        try:
            record_id = int(parts[0])
        except ValueError:
            return None
        if not parts[1] or not parts[2]:
            return None
        return cls(record_id=record_id, title=parts[1], category=parts[2])

    @classmethod
    def parse(cls, raw: str) -> "NotificationPayload":
        """Parse either payload form, JSON first."""
        if raw.lstrip().startswith("{"):
            return cls.from_json(raw)
        payload = cls.from_legacy(raw)
        if payload is None:
            raise NotificationPayloadError(f"Unrecognised payload: {raw!r}")
        return payload
