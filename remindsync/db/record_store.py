import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import delete, func, select

from remindsync.clock import Clock, as_utc, parse_instant, utc_now
from remindsync.errors import LocalStorageError, NotFoundError, ValidationError
from remindsync.models.frequency import frequency_from_dict
from remindsync.models.record import (
    DeadLetterItem,
    ReminderRecord,
    ReminderStatus,
    SyncOperation,
    SyncQueueItem,
)
from remindsync.models.reminder import ReminderRow
from remindsync.models.sync_queue import DeadLetterRow, SyncQueueRow

logger = logging.getLogger(__name__)

Mutation = Callable[[ReminderRecord], Union[ReminderRecord, Awaitable[ReminderRecord]]]

COLLECTIONS = {
    "reminders": ReminderRow,
    "sync_queue": SyncQueueRow,
    "sync_dead_letter": DeadLetterRow,
}


class RecordStore:
    """Durable local store of reminder records, the sync queue and dead letters.

    All record mutations go through one lock per record id so that user
    actions and sync write-backs never lose each other's updates. Queue
    writes share a single lock, which keeps enqueue order equal to id order.
    """

    def __init__(self, session_factory, error_log=None, clock: Clock = utc_now):
        """
        Args:
            session_factory: Async session maker for the local database
            error_log: Optional ErrorLog receiving fatal-local events
            clock: Returns the current UTC instant
        """
        self._session_factory = session_factory
        self._error_log = error_log
        self._clock = clock
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._queue_lock = asyncio.Lock()

    def lock_for(self, record_id: int) -> asyncio.Lock:
        return self._locks[record_id]

    # Records

    async def get(self, record_id: int) -> Optional[ReminderRecord]:
        async with self._session_factory() as session:
            row = await session.get(ReminderRow, record_id)
            if row is None:
                return None
            records = await self._rows_to_records([row])
            return records[0] if records else None

    async def require(self, record_id: int) -> ReminderRecord:
        record = await self.get(record_id)
        if record is None:
            raise NotFoundError(f"Reminder {record_id} not found")
        return record

    async def list_all(self) -> List[ReminderRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(ReminderRow).order_by(ReminderRow.id))
            rows = result.scalars().all()
        return await self._rows_to_records(rows)

    async def list_active(self) -> List[ReminderRecord]:
        """Records that may hold a trigger (active or snoozed)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReminderRow)
                .where(ReminderRow.status.in_([ReminderStatus.ACTIVE.value, ReminderStatus.SNOOZED.value]))
                .order_by(ReminderRow.id)
            )
            rows = result.scalars().all()
        return await self._rows_to_records(rows)

    async def insert(self, record: ReminderRecord) -> ReminderRecord:
        """Persist a new record and return it with its local id assigned."""
        if record.id is not None:
            raise ValidationError("New records must not carry an id")
        try:
            async with self._session_factory() as session:
                row = ReminderRow()
                self._fill_row(row, record)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return record.copy(id=row.id)
        except ValidationError:
            raise
        except Exception as e:
            logger.error(f"Error inserting reminder locally: {str(e)}")
            raise LocalStorageError(f"Could not save reminder: {e}") from e

    async def save(self, record: ReminderRecord) -> ReminderRecord:
        """Overwrite an existing record. Callers should hold ``lock_for(record.id)``."""
        try:
            async with self._session_factory() as session:
                row = await session.get(ReminderRow, record.id)
                if row is None:
                    raise NotFoundError(f"Reminder {record.id} not found")
                self._fill_row(row, record)
                await session.commit()
                return record
        except NotFoundError:
            raise
        except Exception as e:
            logger.error(f"Error saving reminder {record.id} locally: {str(e)}")
            raise LocalStorageError(f"Could not update reminder {record.id}: {e}") from e

    async def mutate(self, record_id: int, mutation: Mutation) -> ReminderRecord:
        """
        Apply a change to a record under its lock.

        Args:
            record_id: Local record id
            mutation: Receives the current record and returns the new one (may be async)

        Returns:
            The saved record
        """
        async with self.lock_for(record_id):
            current = await self.require(record_id)
            updated = mutation(current)
            if asyncio.iscoroutine(updated):
                updated = await updated
            return await self.save(updated)

    async def delete(self, record_id: int) -> bool:
        async with self.lock_for(record_id):
            try:
                async with self._session_factory() as session:
                    row = await session.get(ReminderRow, record_id)
                    if row is None:
                        return False
                    await session.delete(row)
                    await session.commit()
            except Exception as e:
                logger.error(f"Error deleting reminder {record_id} locally: {str(e)}")
                raise LocalStorageError(f"Could not delete reminder {record_id}: {e}") from e
        self._locks.pop(record_id, None)
        return True

    async def migrate(self, compute_next: Callable[[ReminderRecord], Optional[datetime]]) -> int:
        """
        Backfill ``next_fire_at`` for schedulable records that lack it.

        Args:
            compute_next: Returns the next fire instant for a record

        Returns:
            Number of records updated
        """
        updated = 0
        for record in await self.list_active():
            if record.next_fire_at is not None:
                continue
            next_fire_at = compute_next(record)
            if next_fire_at is None:
                continue
            await self.mutate(record.id, lambda r: r.copy(next_fire_at=next_fire_at))
            updated += 1
        if updated:
            logger.info(f"Backfilled next fire instant for {updated} reminders")
        return updated

    # Sync queue

    async def append_queue_item(self, item: SyncQueueItem) -> SyncQueueItem:
        async with self._queue_lock:
            async with self._session_factory() as session:
                row = SyncQueueRow()
                self._fill_queue_row(row, item)
                session.add(row)
                await session.commit()
                await session.refresh(row)
                item.id = row.id
                return item

    async def list_queue(self) -> List[SyncQueueItem]:
        """All queued items in enqueue order."""
        async with self._session_factory() as session:
            result = await session.execute(select(SyncQueueRow).order_by(SyncQueueRow.id))
            rows = result.scalars().all()
        try:
            return [self._row_to_queue_item(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            await self._reset_corrupt("sync_queue", e)
            return []

    async def update_queue_item(self, item: SyncQueueItem) -> None:
        async with self._queue_lock:
            async with self._session_factory() as session:
                row = await session.get(SyncQueueRow, item.id)
                if row is None:
                    return
                self._fill_queue_row(row, item)
                await session.commit()

    async def remove_queue_item(self, item_id: int) -> None:
        async with self._queue_lock:
            async with self._session_factory() as session:
                await session.execute(delete(SyncQueueRow).where(SyncQueueRow.id == item_id))
                await session.commit()

    async def count_pending_for(self, record_id: int) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(SyncQueueRow).where(SyncQueueRow.record_id == record_id)
            )
            return result.scalar_one()

    async def move_to_dead_letter(self, item: SyncQueueItem, reason: str) -> DeadLetterItem:
        """Remove an item from the queue and keep it for manual review."""
        failed_at = as_utc(self._clock())
        async with self._queue_lock:
            async with self._session_factory() as session:
                row = DeadLetterRow(queue_item=item.to_dict(), reason=reason, failed_at=failed_at)
                session.add(row)
                if item.id is not None:
                    await session.execute(delete(SyncQueueRow).where(SyncQueueRow.id == item.id))
                await session.commit()
                await session.refresh(row)
        return DeadLetterItem(item=item, reason=reason, failed_at=failed_at, id=row.id)

    async def list_dead_letter(self) -> List[DeadLetterItem]:
        async with self._session_factory() as session:
            result = await session.execute(select(DeadLetterRow).order_by(DeadLetterRow.id))
            rows = result.scalars().all()
        try:
            return [
                DeadLetterItem(
                    item=self._queue_item_from_map(row.queue_item),
                    reason=row.reason,
                    failed_at=as_utc(row.failed_at),
                    id=row.id,
                )
                for row in rows
            ]
        except (KeyError, TypeError, ValueError) as e:
            await self._reset_corrupt("sync_dead_letter", e)
            return []

    async def remove_dead_letter(self, dead_letter_id: int) -> Optional[DeadLetterItem]:
        for entry in await self.list_dead_letter():
            if entry.id == dead_letter_id:
                async with self._session_factory() as session:
                    await session.execute(delete(DeadLetterRow).where(DeadLetterRow.id == dead_letter_id))
                    await session.commit()
                return entry
        return None

    async def reset_collection(self, name: str) -> None:
        """Drop every row of a local collection."""
        model = COLLECTIONS[name]
        async with self._session_factory() as session:
            await session.execute(delete(model))
            await session.commit()
        logger.warning(f"Local collection {name} was reset to empty")

    # Conversion helpers

    async def _rows_to_records(self, rows) -> List[ReminderRecord]:
        try:
            return [self._row_to_record(row) for row in rows]
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            await self._reset_corrupt("reminders", e)
            return []

    async def _reset_corrupt(self, name: str, error: Exception) -> None:
        logger.error(f"Local collection {name} is unreadable: {str(error)}")
        await self.reset_collection(name)
        if self._error_log is not None:
            from remindsync.services.error_log import ErrorCategory, Severity

            await self._error_log.record(
                "LOCAL_STORAGE_CORRUPTED",
                f"Collection {name} was unreadable and has been reset: {error}",
                category=ErrorCategory.FATAL_LOCAL,
                severity=Severity.ERROR,
                metadata={"collection": name},
            )

    @staticmethod
    def _row_to_record(row: ReminderRow) -> ReminderRecord:
        return ReminderRecord.from_dict({
            "id": row.id,
            "title": row.title,
            "category": row.category,
            "description": row.description or "",
            "frequency": row.frequency,
            "time_of_day": row.time_of_day,
            "status": row.status,
            "enable_notifications": bool(row.enable_notifications),
            "repeat_limit": row.repeat_limit or 0,
            "completion_count": row.completion_count or 0,
            "next_fire_at": as_utc(row.next_fire_at),
            "last_completed_at": as_utc(row.last_completed_at),
            "completed_at": as_utc(row.completed_at),
            "snoozed_at": as_utc(row.snoozed_at),
            "created_at": as_utc(row.created_at),
            "updated_at": as_utc(row.updated_at),
            "needs_sync": bool(row.needs_sync),
            "remote_id": row.remote_id,
        })

    @staticmethod
    def _fill_row(row: ReminderRow, record: ReminderRecord) -> None:
        # Round-trip the frequency so only canonical maps are stored
        row.frequency = frequency_from_dict(record.frequency.to_dict()).to_dict()
        row.remote_id = record.remote_id
        row.title = record.title
        row.category = record.category
        row.description = record.description
        row.time_of_day = str(record.time_of_day)
        row.status = record.status.value
        row.enable_notifications = record.enable_notifications
        row.repeat_limit = record.repeat_limit
        row.completion_count = record.completion_count
        row.next_fire_at = as_utc(record.next_fire_at)
        row.last_completed_at = as_utc(record.last_completed_at)
        row.completed_at = as_utc(record.completed_at)
        row.snoozed_at = as_utc(record.snoozed_at)
        row.created_at = as_utc(record.created_at)
        row.updated_at = as_utc(record.updated_at)
        row.needs_sync = record.needs_sync

    @staticmethod
    def _fill_queue_row(row: SyncQueueRow, item: SyncQueueItem) -> None:
        row.operation = item.operation.value
        row.table_name = item.table
        row.record_id = item.record_id
        row.payload = item.payload
        row.base_updated_at = as_utc(item.base_updated_at)
        row.enqueued_at = as_utc(item.enqueued_at)
        row.retry_count = item.retry_count
        row.next_retry_at = as_utc(item.next_retry_at)
        row.last_error = item.last_error
        row.conflict = item.conflict

    @staticmethod
    def _row_to_queue_item(row: SyncQueueRow) -> SyncQueueItem:
        return SyncQueueItem(
            id=row.id,
            operation=SyncOperation(row.operation),
            table=row.table_name,
            record_id=row.record_id,
            payload=dict(row.payload),
            base_updated_at=as_utc(row.base_updated_at),
            enqueued_at=as_utc(row.enqueued_at),
            retry_count=row.retry_count or 0,
            next_retry_at=as_utc(row.next_retry_at),
            last_error=row.last_error,
            conflict=row.conflict,
        )

    @staticmethod
    def _queue_item_from_map(data) -> SyncQueueItem:
        return SyncQueueItem(
            id=data.get("id"),
            operation=SyncOperation(data["operation"]),
            table=data["table"],
            record_id=data.get("record_id"),
            payload=dict(data["payload"]),
            base_updated_at=parse_instant(data.get("base_updated_at")),
            enqueued_at=parse_instant(data["enqueued_at"]),
            retry_count=data.get("retry_count", 0),
            next_retry_at=parse_instant(data.get("next_retry_at")),
            last_error=data.get("last_error"),
            conflict=data.get("conflict"),
        )
