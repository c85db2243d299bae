import json
from datetime import date, timedelta

import pytest

from remindsync.errors import ValidationError
from remindsync.models.frequency import Custom, Daily, Monthly, Once, TimeOfDay, Weekly, frequency_from_dict
from remindsync.models.payload import NotificationAction, NotificationPayload, NotificationPayloadError
from remindsync.models.record import ReminderRecord, ReminderStatus

from tests.conftest import START, make_record


class TestFrequency:
    def test_type_tag(self):
        assert frequency_from_dict({"type": "daily"}) == Daily()
        assert frequency_from_dict({"type": "monthly", "dayOfMonth": 31}) == Monthly(31)

    def test_legacy_spellings(self):
        assert frequency_from_dict({"id": "custom", "interval": 5, "unit": "minutes"}) == Custom(5, "minutes")
        assert frequency_from_dict({"id": "weekly", "selectedDays": [5, 1]}) == Weekly(frozenset({1, 5}))

    def test_once_accepts_full_timestamp(self):
        assert frequency_from_dict({"type": "once", "date": "2024-03-01T00:00:00Z"}) == Once(date(2024, 3, 1))

    def test_to_dict_is_read_back(self):
        spec = Custom(2, "hours")
        assert frequency_from_dict(spec.to_dict()) == spec

    @pytest.mark.parametrize(
        "data",
        [
            {"type": "fortnightly"},
            {"type": "weekly", "selectedDays": []},
            {"type": "weekly", "selectedDays": [0]},
            {"type": "weekly"},
            {"type": "monthly", "dayOfMonth": 32},
            {"type": "custom", "intervalValue": 0, "intervalUnit": "minutes"},
            {"type": "custom", "intervalValue": 5, "intervalUnit": "weeks"},
            {"type": "custom", "intervalValue": True, "intervalUnit": "minutes"},
            {"type": "once"},
            {"type": "once", "date": "not-a-date"},
            "daily",
        ],
    )
    def test_rejects_invalid(self, data):
        with pytest.raises(ValidationError):
            frequency_from_dict(data)

    def test_time_of_day(self):
        assert TimeOfDay.parse("07:05") == TimeOfDay(7, 5)
        assert str(TimeOfDay(7, 5)) == "07:05"
        for raw in ("24:00", "12:60", "noon", "7"):
            with pytest.raises(ValidationError):
                TimeOfDay.parse(raw)


class TestReminderRecord:
    def test_from_dict_reads_to_dict(self):
        record = make_record(id=4, remote_id="abc", completion_count=2)
        restored = ReminderRecord.from_dict(record.to_dict())
        assert restored == record
        assert restored.next_fire_at.tzinfo is not None

    def test_rejects_unknown_fields(self):
        data = make_record().to_dict()
        data["colour"] = "red"
        with pytest.raises(ValidationError, match="Unknown"):
            ReminderRecord.from_dict(data)

    def test_rejects_missing_required(self):
        data = make_record().to_dict()
        del data["frequency"]
        with pytest.raises(ValidationError, match="frequency"):
            ReminderRecord.from_dict(data)

    @pytest.mark.parametrize(
        "key,value",
        [
            ("repeat_limit", "3"),
            ("completion_count", True),
            ("enable_notifications", "yes"),
            ("status", "archived"),
            ("next_fire_at", "tomorrow"),
            ("title", ""),
        ],
    )
    def test_rejects_bad_values(self, key, value):
        data = make_record().to_dict()
        data[key] = value
        with pytest.raises(ValidationError):
            ReminderRecord.from_dict(data)

    def test_is_schedulable(self):
        assert make_record().is_schedulable
        assert not make_record(status=ReminderStatus.PAUSED).is_schedulable
        assert not make_record(enable_notifications=False).is_schedulable
        assert not make_record(next_fire_at=None).is_schedulable

    def test_limit_reached(self):
        assert not make_record(repeat_limit=0, completion_count=10).limit_reached
        assert make_record(repeat_limit=2, completion_count=2).limit_reached

    def test_remote_row(self):
        record = make_record(id=3, remote_id="r-1")
        row = record.to_remote_row()
        assert row["id"] == "r-1"
        assert row["local_id"] == 3
        assert row["time"] == "09:00"

        changed = dict(row, title="Stretch", time="10:30", updated_at=(START + timedelta(hours=1)).isoformat())
        applied = record.apply_remote_row(changed)
        assert applied.title == "Stretch"
        assert applied.time_of_day == TimeOfDay(10, 30)
        assert applied.updated_at == START + timedelta(hours=1)
        assert applied.id == 3

    def test_completed_remote_row_has_no_next_fire(self):
        row = dict(make_record().to_remote_row(), status="completed")
        applied = make_record().apply_remote_row(row)
        assert applied.status == ReminderStatus.COMPLETED
        assert applied.next_fire_at is None


class TestNotificationPayload:
    def test_json_form(self):
        payload = NotificationPayload(7, "Stretch", "Health", scheduled_at=START)
        data = json.loads(payload.to_json())
        assert data["version"] == 1
        assert data["scheduledTime"].startswith("2024-01-10T08:00:00")
        assert NotificationPayload.parse(payload.to_json()) == payload

    def test_legacy_form(self):
        payload = NotificationPayload.parse("12|Call mom|Family")
        assert (payload.record_id, payload.title, payload.category) == (12, "Call mom", "Family")
        assert payload.action == NotificationAction.TRIGGER
        assert payload.to_legacy() == "12|Call mom|Family"

    @pytest.mark.parametrize(
        "raw",
        [
            "garbage",
            "x|Call mom|Family",
            "12||Family",
            '{"id": "12", "title": "a", "category": "b", "action": "trigger"}',
            '{"id": 12, "title": "a", "category": "b", "action": "explode"}',
            '{"id": 12, "title": "a", "category": "b", "action": "snooze", "scheduledTime": "soon"}',
            "{not json",
        ],
    )
    def test_rejects_invalid(self, raw):
        with pytest.raises(NotificationPayloadError):
            NotificationPayload.parse(raw)
