import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from remindsync.clock import Clock, as_utc, utc_now
from remindsync.db.record_store import RecordStore
from remindsync.errors import NotFoundError, ValidationError
from remindsync.models.frequency import FrequencySpec, Once, TimeOfDay, frequency_from_dict
from remindsync.models.payload import NotificationPayload
from remindsync.models.record import ReminderRecord, ReminderStatus, SyncOperation
from remindsync.scheduler.tasks import BackgroundTasks
from remindsync.scheduler.trigger import TriggerScheduler
from remindsync.services.error_log import ErrorCategory, ErrorLog, Severity
from remindsync.services.schedule_validator import ScheduleTimeValidator
from remindsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title", "category", "description", "frequency", "time_of_day",
    "enable_notifications", "repeat_limit", "status",
)

ConflictCallback = Callable[[datetime, datetime], Any]
ConfirmationCallback = Callable[[datetime], Any]


async def _maybe_await(value):
    if asyncio.iscoroutine(value):
        return await value
    return value


class ReminderService:
    """
    User-facing reminder operations.

    Every operation writes locally first and returns; re-arming the trigger
    and queueing the remote sync run in the background. Validation and
    storage errors are raised to the caller.
    """

    def __init__(
        self,
        store: RecordStore,
        validator: ScheduleTimeValidator,
        triggers: TriggerScheduler,
        sync_engine: SyncEngine,
        tasks: BackgroundTasks,
        notifier=None,
        error_log: Optional[ErrorLog] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.validator = validator
        self.calculator = validator.calculator
        self.triggers = triggers
        self.sync_engine = sync_engine
        self.tasks = tasks
        self.notifier = notifier
        self.error_log = error_log
        self.clock = clock

        triggers.set_fire_callback(self.handle_trigger)
        sync_engine.on_record_synced = self.on_record_synced
        sync_engine.reschedule = self.rescheduled_next_fire

    def _now(self) -> datetime:
        return as_utc(self.clock())

    # Queries

    async def get(self, record_id: int) -> ReminderRecord:
        return await self.store.require(record_id)

    async def list_reminders(self, status: Optional[ReminderStatus] = None) -> List[ReminderRecord]:
        records = await self.store.list_all()
        if status is not None:
            records = [r for r in records if r.status == ReminderStatus(status)]
        return records

    def describe_next(self, record: ReminderRecord) -> str:
        if record.status == ReminderStatus.COMPLETED:
            return "Completed"
        if record.status == ReminderStatus.PAUSED:
            return "Paused"
        return self.calculator.describe_next(record.next_fire_at, self._now())

    # Scheduling helpers

    def _initial_fire(self, spec: FrequencySpec, time_of_day: TimeOfDay) -> Optional[datetime]:
        return as_utc(self.validator.precise_schedule_time(spec, time_of_day))

    def _next_regular(self, record: ReminderRecord) -> Optional[datetime]:
        return self.validator.next_fire(record.frequency, record.time_of_day, self._now())

    def _schedule(self, record: ReminderRecord):
        if not record.is_schedulable:
            self.triggers.disarm(record.id)
            return
        payload = NotificationPayload(
            record_id=record.id,
            title=record.title,
            category=record.category,
            scheduled_at=record.next_fire_at,
        ).to_map()
        self.tasks.submit(
            self.triggers.arm(record.id, record.next_fire_at, payload),
            f"arm reminder {record.id}",
            ErrorCategory.SCHEDULING,
        )

    def _enqueue(self, operation: SyncOperation, record: ReminderRecord, base_updated_at: Optional[datetime] = None):
        self.tasks.submit(
            self.sync_engine.enqueue_record(operation, record, base_updated_at),
            f"queue {operation.value} of reminder {record.id}",
            ErrorCategory.SYNC_TRANSIENT,
        )

    async def _change(self, record_id: int, mutation: Callable[[ReminderRecord], ReminderRecord]) -> ReminderRecord:
        """Apply a local change, then re-arm and queue the sync in the background."""
        before = {}

        def apply(current: ReminderRecord) -> ReminderRecord:
            before["record"] = current
            updated = mutation(current)
            return updated.copy(updated_at=self._now(), needs_sync=True)

        updated = await self.store.mutate(record_id, apply)
        old = before["record"]
        if updated.scheduling_changed(old) or not updated.is_schedulable:
            self._schedule(updated)
        self._enqueue(SyncOperation.UPDATE, updated, base_updated_at=old.updated_at)
        return updated

    # Operations

    async def create(
        self,
        title: str,
        category: str,
        frequency: Union[FrequencySpec, Dict[str, Any]],
        time_of_day: Union[TimeOfDay, str],
        description: str = "",
        enable_notifications: bool = True,
        repeat_limit: int = 0,
    ) -> ReminderRecord:
        """
        Save a new reminder.

        Args:
            title: Reminder title
            category: Category label
            frequency: Frequency spec or its stored map form
            time_of_day: ``HH:MM`` wall-clock time
            description: Optional description
            enable_notifications: Whether to arm a trigger at all
            repeat_limit: Completions after which the reminder is done, 0 for unbounded

        Returns:
            The stored record with its local id

        Raises:
            ValidationError: if any input is malformed or a one-time date is in the past
        """
        spec = frequency if not isinstance(frequency, dict) else frequency_from_dict(frequency)
        tod = TimeOfDay.parse(time_of_day)
        next_fire_at = self._initial_fire(spec, tod)
        if next_fire_at is None:
            raise ValidationError("One-time reminder is scheduled in the past")

        now = self._now()
        record = ReminderRecord(
            title=title.strip() if isinstance(title, str) else title,
            category=category,
            description=description or "",
            frequency=spec,
            time_of_day=tod,
            enable_notifications=enable_notifications,
            repeat_limit=repeat_limit,
            next_fire_at=as_utc(next_fire_at),
            created_at=now,
            updated_at=now,
        )
        record = await self.store.insert(record)
        logger.info(f"Saved reminder {record.id} ({record.frequency.kind}), next {next_fire_at.isoformat()}")

        self._schedule(record)
        self._enqueue(SyncOperation.INSERT, record)
        return record

    async def save_with_confirmation(
        self,
        title: str,
        category: str,
        frequency: Union[FrequencySpec, Dict[str, Any]],
        time_of_day: Union[TimeOfDay, str],
        on_conflict: Optional[ConflictCallback] = None,
        on_confirmation: Optional[ConfirmationCallback] = None,
        **kwargs,
    ) -> Optional[ReminderRecord]:
        """
        Save a reminder, letting the caller confirm an adjusted schedule.

        ``on_conflict(original, adjusted)`` is called when the first fire had
        to move; ``original`` is what the user asked for. A falsy result
        cancels the save. Without it the adjustment is applied silently.
        ``on_confirmation(final)`` is called with the instant the reminder
        will first fire.

        Returns:
            The stored record, or None if the user declined the adjustment

        Raises:
            ValidationError: if any input is malformed or a one-time date is in the past
        """
        spec = frequency if not isinstance(frequency, dict) else frequency_from_dict(frequency)
        tod = TimeOfDay.parse(time_of_day)
        proposed = self.validator.proposed_schedule_time(spec, tod)
        if proposed is None:
            raise ValidationError("One-time reminder is scheduled in the past")
        adjusted, has_conflict = self.validator.adjust_for_conflict(proposed, interactive=on_conflict is not None)

        if has_conflict and on_conflict is not None:
            original = self.calculator.original_proposed_time(spec, tod, self._now())
            accepted = await _maybe_await(on_conflict(original, adjusted))
            if not accepted:
                logger.info(f"Schedule adjustment for {title!r} declined")
                return None

        record = await self.create(title, category, spec, tod, **kwargs)
        if on_confirmation is not None:
            await _maybe_await(on_confirmation(record.next_fire_at))
        return record

    async def update(self, record_id: int, **changes) -> ReminderRecord:
        """
        Edit a reminder. Changing the frequency, time or status recomputes the next fire.

        Raises:
            ValidationError: on unknown fields or invalid values
            NotFoundError: if the reminder does not exist
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")
        if "frequency" in changes and isinstance(changes["frequency"], dict):
            changes["frequency"] = frequency_from_dict(changes["frequency"])
        if "time_of_day" in changes:
            changes["time_of_day"] = TimeOfDay.parse(changes["time_of_day"])
        if "status" in changes:
            try:
                changes["status"] = ReminderStatus(changes["status"])
            except ValueError:
                raise ValidationError(f"Invalid status: {changes['status']!r}")

        def mutation(current: ReminderRecord) -> ReminderRecord:
            updated = current.copy(**changes)
            reschedule = (
                updated.frequency != current.frequency
                or updated.time_of_day != current.time_of_day
                or (updated.status == ReminderStatus.ACTIVE and current.status != ReminderStatus.ACTIVE)
            )
            if updated.status == ReminderStatus.COMPLETED:
                return updated.copy(next_fire_at=None, completed_at=self._now())
            if reschedule:
                updated = updated.copy(next_fire_at=self._initial_fire(updated.frequency, updated.time_of_day))
            return updated

        return await self._change(record_id, mutation)

    async def delete(self, record_id: int) -> bool:
        """Delete a reminder locally, cancel its trigger and queue the remote delete."""
        record = await self.store.get(record_id)
        if record is None:
            return False
        self.triggers.disarm(record_id)
        await self.store.delete(record_id)
        logger.info(f"Deleted reminder {record_id}")

        payload = {"local_id": record_id}
        if record.remote_id:
            payload["id"] = record.remote_id
        self.tasks.submit(
            self.sync_engine.enqueue(
                SyncOperation.DELETE, "reminders", payload, record_id, base_updated_at=record.updated_at
            ),
            f"queue delete of reminder {record_id}",
            ErrorCategory.SYNC_TRANSIENT,
        )
        return True

    async def toggle(self, record_id: int) -> ReminderRecord:
        """Pause an active reminder or resume a paused one."""

        def mutation(current: ReminderRecord) -> ReminderRecord:
            if current.status == ReminderStatus.COMPLETED:
                raise ValidationError(f"Reminder {record_id} is completed and cannot be toggled")
            if current.status == ReminderStatus.PAUSED:
                return current.copy(
                    status=ReminderStatus.ACTIVE,
                    next_fire_at=self._initial_fire(current.frequency, current.time_of_day),
                )
            return current.copy(status=ReminderStatus.PAUSED)

        return await self._change(record_id, mutation)

    async def mark_completed(self, record_id: int) -> ReminderRecord:
        """Record one completion; the reminder stays active until its repeat limit."""

        def mutation(current: ReminderRecord) -> ReminderRecord:
            now = self._now()
            updated = current.copy(completion_count=current.completion_count + 1, last_completed_at=now)
            if updated.limit_reached:
                logger.info(f"Reminder {record_id} reached its repeat limit")
                return updated.copy(status=ReminderStatus.COMPLETED, next_fire_at=None, completed_at=now)
            next_fire_at = self.calculator.compute_next_after_completion(
                current.frequency, current.time_of_day, now
            )
            if next_fire_at is not None:
                next_fire_at = as_utc(self.validator.validate(next_fire_at))
            status = ReminderStatus.ACTIVE if current.status == ReminderStatus.SNOOZED else current.status
            return updated.copy(status=status, next_fire_at=next_fire_at)

        return await self._change(record_id, mutation)

    async def complete_manually(self, record_id: int) -> ReminderRecord:
        """Move a reminder to completed regardless of its repeat limit."""
        return await self._change(
            record_id,
            lambda current: current.copy(
                status=ReminderStatus.COMPLETED, next_fire_at=None, completed_at=self._now()
            ),
        )

    async def snooze(self, record_id: int, minutes: int) -> ReminderRecord:
        """Fire again ``minutes`` from now, then return to the regular schedule."""
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
            raise ValidationError(f"Snooze minutes must be a positive integer, got {minutes!r}")

        def mutation(current: ReminderRecord) -> ReminderRecord:
            if current.status in (ReminderStatus.COMPLETED, ReminderStatus.PAUSED):
                raise ValidationError(f"Reminder {record_id} is {current.status.value} and cannot be snoozed")
            now = self._now()
            return current.copy(
                status=ReminderStatus.SNOOZED,
                snoozed_at=now,
                next_fire_at=now + timedelta(minutes=minutes),
            )

        updated = await self._change(record_id, mutation)
        logger.info(f"Snoozed reminder {record_id} for {minutes} minutes")
        return updated

    # Trigger and sync callbacks

    async def handle_trigger(self, record_id: int, payload_map: Optional[Dict[str, Any]] = None):
        """
        Fire callback: deliver the notification and move to the next occurrence.

        Snoozed reminders go back to active on their regular schedule.
        One-time reminders keep their status with no next occurrence.
        """
        record = await self.store.get(record_id)
        if record is None or record.status not in (ReminderStatus.ACTIVE, ReminderStatus.SNOOZED):
            logger.info(f"Reminder {record_id} is no longer active, ignoring fire")
            return

        payload = NotificationPayload(
            record_id=record.id,
            title=record.title,
            category=record.category,
            scheduled_at=record.next_fire_at,
            additional_data=dict((payload_map or {}).get("additionalData") or {}),
        )
        if record.enable_notifications and self.notifier is not None:
            try:
                await self.notifier.notify(payload)
            except Exception as e:
                logger.error(f"Error delivering reminder {record_id}: {str(e)}")
                if self.error_log is not None:
                    await self.error_log.record(
                        "NOTIFICATION_DELIVERY_FAILED",
                        f"Could not deliver reminder {record_id}: {e}",
                        category=ErrorCategory.GENERAL,
                        severity=Severity.WARNING,
                        metadata={"record_id": record_id},
                    )

        def advance(current: ReminderRecord) -> ReminderRecord:
            if isinstance(current.frequency, Once):
                return current.copy(status=ReminderStatus.ACTIVE, next_fire_at=None)
            return current.copy(
                status=ReminderStatus.ACTIVE,
                next_fire_at=as_utc(self._next_regular(current)),
            )

        try:
            updated = await self._change(record_id, advance)
        except NotFoundError:
            logger.info(f"Reminder {record_id} was deleted while firing")
            return
        logger.info(f"Reminder {record_id} next: {self.describe_next(updated)}")

    def rescheduled_next_fire(self, record: ReminderRecord) -> Optional[datetime]:
        """Next fire for a record whose frequency or time of day changed remotely."""
        if record.status == ReminderStatus.COMPLETED:
            return None
        if record.status != ReminderStatus.ACTIVE:
            return record.next_fire_at
        return self._initial_fire(record.frequency, record.time_of_day)

    async def on_record_synced(self, new: ReminderRecord, old: ReminderRecord):
        """Re-arm when a sync write-back changed scheduling-relevant fields."""
        if new.scheduling_changed(old):
            logger.info(f"Remote changes to reminder {new.id} affect scheduling, re-arming")
            self._schedule(new)

    async def refresh_overdue(self) -> int:
        """Move reminders whose next fire passed unnoticed to their next occurrence."""
        now = self._now()
        refreshed = 0
        for record in await self.store.list_active():
            if record.next_fire_at is None or record.next_fire_at > now:
                continue
            if self.triggers.armed(record.id) is not None:
                continue

            def advance(current: ReminderRecord) -> ReminderRecord:
                if isinstance(current.frequency, Once):
                    return current.copy(status=ReminderStatus.ACTIVE, next_fire_at=None)
                return current.copy(status=ReminderStatus.ACTIVE, next_fire_at=as_utc(self._next_regular(current)))

            try:
                await self._change(record.id, advance)
                refreshed += 1
            except NotFoundError:
                continue
        if refreshed:
            logger.info(f"Moved {refreshed} overdue reminders to their next occurrence")
        return refreshed

    def backfill_next_fire(self, record: ReminderRecord) -> Optional[datetime]:
        """Used by ``RecordStore.migrate`` for records stored without a next fire instant."""
        next_fire_at = self._next_regular(record)
        return as_utc(next_fire_at) if next_fire_at is not None else None
