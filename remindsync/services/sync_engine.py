"""
Offline-first synchronization of the local record store with the remote store.

Every local mutation is appended to a durable queue. ``drain`` replays the
queue against the remote store one item at a time, oldest first. An item
that cannot be applied yet blocks the later items of the same record, so a
record's mutations always reach the remote in the order they were made.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from remindsync.api.remote_store import RemoteStoreClient
from remindsync.clock import Clock, as_utc, format_instant, parse_instant, utc_now
from remindsync.db.record_store import RecordStore
from remindsync.errors import NotFoundError, RemoteStoreError, SyncConflictError
from remindsync.models.record import DeadLetterItem, ReminderRecord, SyncOperation, SyncQueueItem
from remindsync.services.error_log import ErrorCategory, ErrorLog, Severity

logger = logging.getLogger(__name__)

REMINDERS_TABLE = "reminders"

# Fields whose local value always wins a merge
LOCAL_AUTHORITATIVE_FIELDS = ("completion_count", "last_completed", "status")
# Fields that only make sense next to the status they were written with
STATUS_BOUND_FIELDS = ("next_occurrence_date_time", "completed_at", "snoozed_at")
# Remote changes to these move the next occurrence
SCHEDULE_FIELDS = ("frequency", "time")
# Fields never compared when looking for divergence
UNCOMPARED_FIELDS = ("id", "created_at", "updated_at")

MAX_RETRIES = 5
MAX_BACKOFF_MINUTES = 16
STALE_AFTER = timedelta(hours=1)

SyncedHook = Callable[[ReminderRecord, ReminderRecord], Awaitable[None]]
RescheduleHook = Callable[[ReminderRecord], Optional[datetime]]


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before the next attempt after ``retry_count`` failures: 1, 2, 4, 8, 16, 16... minutes."""
    return timedelta(minutes=min(MAX_BACKOFF_MINUTES, 2 ** max(retry_count - 1, 0)))


def diff_fields(local: Dict[str, Any], remote: Dict[str, Any]) -> List[str]:
    """Overlapping fields whose values differ."""
    return sorted(
        key for key in set(local) & set(remote)
        if key not in UNCOMPARED_FIELDS and local[key] != remote[key]
    )


def merge_rows(local: Dict[str, Any], remote: Dict[str, Any]) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """
    Field-level merge of a local payload with the remote row.

    Locally-authoritative fields keep the local value, and so do the
    status-bound fields since the status always comes from the local side.
    Every other overlapping field takes the value of the side with the newer
    ``updated_at`` (ties go to the local side).

    Returns:
        Tuple of (merged row, fields taken from the remote), or None when
        neither side carries ``updated_at``
    """
    local_ts = parse_instant(local.get("updated_at"))
    remote_ts = parse_instant(remote.get("updated_at"))
    if local_ts is None and remote_ts is None:
        return None

    merged = dict(local)
    remote_won = {}
    remote_newer = remote_ts is not None and (local_ts is None or remote_ts > local_ts)
    if remote_newer:
        for key, value in remote.items():
            if key in LOCAL_AUTHORITATIVE_FIELDS or key in STATUS_BOUND_FIELDS:
                continue
            if key == "id" or key not in local:
                continue
            if merged[key] != value:
                merged[key] = value
                remote_won[key] = value
    merged["updated_at"] = format_instant(max(ts for ts in (local_ts, remote_ts) if ts is not None))
    return merged, remote_won


@dataclass
class DrainResult:
    synced: int = 0
    failed: int = 0
    dead_lettered: int = 0
    conflicts: int = 0
    skipped: int = 0
    skipped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "skipped_reason": self.skipped_reason,
            "errors": list(self.errors),
        }


class SyncEngine:
    """Queues mutations and replays them against the remote store."""

    def __init__(
        self,
        store: RecordStore,
        remote: Optional[RemoteStoreClient],
        error_log: ErrorLog,
        clock: Clock = utc_now,
        on_record_synced: Optional[SyncedHook] = None,
        reschedule: Optional[RescheduleHook] = None,
    ):
        self.store = store
        self.remote = remote
        self.error_log = error_log
        self.clock = clock
        self.on_record_synced = on_record_synced
        self.reschedule = reschedule
        self.last_sync_at: Optional[datetime] = None
        self._drain_lock = asyncio.Lock()

    def _now(self) -> datetime:
        return as_utc(self.clock())

    async def enqueue(
        self,
        operation: SyncOperation,
        table: str,
        payload: Dict[str, Any],
        record_id: Optional[int] = None,
        base_updated_at: Optional[datetime] = None,
    ) -> SyncQueueItem:
        """Append a durable queue item."""
        item = SyncQueueItem(
            operation=SyncOperation(operation),
            table=table,
            payload=dict(payload),
            record_id=record_id,
            base_updated_at=as_utc(base_updated_at),
            enqueued_at=self._now(),
        )
        item = await self.store.append_queue_item(item)
        logger.info(f"Queued {item.operation.value} for {table}/{record_id} as item {item.id}")
        return item

    async def enqueue_record(
        self,
        operation: SyncOperation,
        record: ReminderRecord,
        base_updated_at: Optional[datetime] = None,
    ) -> SyncQueueItem:
        """Queue a reminder mutation using its remote row as payload."""
        return await self.enqueue(
            operation, REMINDERS_TABLE, record.to_remote_row(), record.id, base_updated_at
        )

    async def drain(self) -> DrainResult:
        """
        Replay due queue items against the remote store.

        Only one drain runs at a time; a concurrent call returns immediately.
        Never raises: failures are recorded on the items and in the error log.
        """
        if self._drain_lock.locked():
            logger.info("Drain already in progress, skipping")
            return DrainResult(skipped_reason="already draining")

        async with self._drain_lock:
            if self.remote is None:
                return DrainResult(skipped_reason="no remote store configured")
            if not await self.remote.is_reachable():
                logger.info("Remote store unreachable, leaving sync queue for later")
                return DrainResult(skipped_reason="remote unreachable")

            result = DrainResult()
            blocked = set()
            now = self._now()
            for item in await self.store.list_queue():
                key = item.record_id if item.record_id is not None else f"item-{item.id}"
                if key in blocked:
                    result.skipped += 1
                    continue
                if not item.is_due(now):
                    blocked.add(key)
                    result.skipped += 1
                    continue
                try:
                    ok = await self._process(item, result)
                except Exception as e:
                    logger.error(f"Unexpected error syncing item {item.id}: {str(e)}")
                    await self._fail(item, e, result)
                    ok = False
                if not ok:
                    blocked.add(key)

            self.last_sync_at = self._now()
            logger.info(
                f"Drain finished: {result.synced} synced, {result.failed} failed, "
                f"{result.dead_lettered} dead-lettered, {result.skipped} skipped"
            )
            return result

    async def _process(self, item: SyncQueueItem, result: DrainResult) -> bool:
        try:
            if item.operation == SyncOperation.INSERT:
                await self._push_insert(item)
            elif item.operation == SyncOperation.UPDATE:
                await self._push_update(item, result)
            else:
                await self._push_delete(item, result)
        except RemoteStoreError as e:
            await self._fail(item, e, result)
            return False
        except SyncConflictError as e:
            await self._unresolvable(item, e, result)
            return False

        await self.store.remove_queue_item(item.id)
        await self._clear_needs_sync(item.record_id)
        result.synced += 1
        return True

    async def _remote_id_for(self, item: SyncQueueItem) -> Optional[str]:
        if item.payload.get("id"):
            return item.payload["id"]
        if item.record_id is None:
            return None
        record = await self.store.get(item.record_id)
        return record.remote_id if record else None

    async def _push_insert(self, item: SyncQueueItem):
        row = {key: value for key, value in item.payload.items() if key != "id"}
        stored = await self.remote.insert(item.table, row)
        remote_id = stored["id"]
        if item.record_id is None:
            return

        try:
            await self.store.mutate(item.record_id, lambda r: r.copy(remote_id=remote_id))
        except NotFoundError:
            logger.info(f"Record {item.record_id} was deleted locally before its insert synced")

        # Later items of this record were queued before the remote id existed
        for pending in await self.store.list_queue():
            if pending.record_id == item.record_id and pending.id != item.id and not pending.payload.get("id"):
                pending.payload["id"] = remote_id
                await self.store.update_queue_item(pending)

    async def _push_update(self, item: SyncQueueItem, result: DrainResult):
        remote_id = await self._remote_id_for(item)
        if not remote_id:
            logger.info(f"Item {item.id} has no remote id yet, inserting instead")
            await self._push_insert(item)
            return

        remote_row = await self.remote.fetch(item.table, remote_id)
        if remote_row is None:
            logger.warning(f"Remote row {remote_id} is gone, re-inserting record {item.record_id}")
            await self._push_insert(item)
            return

        payload = item.payload
        remote_won = {}
        if self._detect_conflict(item, remote_row):
            result.conflicts += 1
            merged = merge_rows(item.payload, remote_row)
            if merged is None:
                await self._record_conflict(item, remote_row, resolved=False)
                raise SyncConflictError(f"Neither copy of {item.table}/{item.record_id} carries updated_at")
            payload, remote_won = merged
            await self._record_conflict(item, remote_row, resolved=True, remote_won=remote_won)
            if any(key in remote_won for key in SCHEDULE_FIELDS):
                payload, remote_won = await self._reschedule_merged(item, payload, remote_won)

        updated = await self.remote.update(item.table, remote_id, payload)
        if updated is None:
            logger.warning(f"Remote row {remote_id} vanished during update, re-inserting")
            await self._push_insert(item)
            return

        if remote_won and item.record_id is not None:
            await self._write_back(item.record_id, remote_won, payload.get("updated_at"))

    async def _reschedule_merged(
        self, item: SyncQueueItem, payload: Dict[str, Any], remote_won: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Recompute the next occurrence for a merged frequency or time of day."""
        if self.reschedule is None or item.record_id is None:
            return payload, remote_won
        record = await self.store.get(item.record_id)
        if record is None:
            return payload, remote_won

        next_fire = format_instant(self.reschedule(record.apply_remote_row(payload)))
        if next_fire == payload.get("next_occurrence_date_time"):
            return payload, remote_won
        logger.info(f"Merged schedule of record {item.record_id} moves its next occurrence to {next_fire}")
        payload = dict(payload, next_occurrence_date_time=next_fire)
        remote_won = dict(remote_won, next_occurrence_date_time=next_fire)
        return payload, remote_won

    async def _push_delete(self, item: SyncQueueItem, result: DrainResult):
        remote_id = await self._remote_id_for(item)
        if not remote_id:
            logger.info(f"Record {item.record_id} never reached the remote store, nothing to delete")
            return
        remote_row = await self.remote.fetch(item.table, remote_id)
        if remote_row is None:
            logger.info(f"Remote row {remote_id} already deleted")
            return
        if self._detect_conflict(item, remote_row):
            result.conflicts += 1
            await self._record_conflict(item, remote_row, resolved=True)
        await self.remote.delete(item.table, remote_id)

    @staticmethod
    def _remote_moved(item: SyncQueueItem, remote_row: Dict[str, Any]) -> bool:
        """Whether the remote row changed after the copy this item was based on."""
        remote_updated = parse_instant(remote_row.get("updated_at"))
        return bool(remote_updated and item.base_updated_at and remote_updated > item.base_updated_at)

    def _detect_conflict(self, item: SyncQueueItem, remote_row: Dict[str, Any]) -> bool:
        if self._remote_moved(item, remote_row):
            return True
        if item.operation == SyncOperation.DELETE:
            return False
        return bool(diff_fields(item.payload, remote_row))

    async def _record_conflict(
        self,
        item: SyncQueueItem,
        remote_row: Dict[str, Any],
        resolved: bool,
        remote_won: Optional[Dict[str, Any]] = None,
    ):
        item.conflict = {
            "detected_at": format_instant(self._now()),
            "fields": diff_fields(item.payload, remote_row),
            "remote": remote_row,
            "resolved": resolved,
        }
        await self.store.update_queue_item(item)
        if resolved and not remote_won and not self._remote_moved(item, remote_row):
            # The remote still holds the copy this mutation was based on
            logger.info(f"Local copy of {item.table}/{item.record_id} replaces {item.conflict['fields']}")
            return
        severity = Severity.WARNING if (remote_won or not resolved) else Severity.INFO
        await self.error_log.record(
            "SYNC_CONFLICT",
            f"Local and remote copies of {item.table}/{item.record_id} diverged"
            + ("" if resolved else " and could not be merged"),
            category=ErrorCategory.SYNC_CONFLICT,
            severity=severity,
            metadata={"queue_item_id": item.id, "fields": item.conflict["fields"], "remote_won": sorted(remote_won or {})},
        )

    async def _write_back(self, record_id: int, remote_won: Dict[str, Any], updated_at: Optional[str]):
        changes = dict(remote_won)
        changes["updated_at"] = updated_at

        def apply(record: ReminderRecord) -> ReminderRecord:
            row = record.to_remote_row()
            row.update(changes)
            return record.apply_remote_row(row)

        try:
            old = await self.store.get(record_id)
            new = await self.store.mutate(record_id, apply)
        except NotFoundError:
            logger.info(f"Record {record_id} was deleted locally, dropping merged state")
            return
        logger.info(f"Wrote merged remote fields {sorted(remote_won)} back to record {record_id}")
        if self.on_record_synced is not None and old is not None:
            try:
                await self.on_record_synced(new, old)
            except Exception as e:
                logger.error(f"Error in sync hook for record {record_id}: {str(e)}")

    async def _clear_needs_sync(self, record_id: Optional[int]):
        if record_id is None or await self.store.count_pending_for(record_id):
            return
        try:
            await self.store.mutate(record_id, lambda r: r.copy(needs_sync=False))
        except NotFoundError:
            pass

    async def _unresolvable(self, item: SyncQueueItem, error: SyncConflictError, result: DrainResult):
        item.retry_count += 1
        item.last_error = f"Unresolvable conflict: {error}"
        if item.retry_count >= MAX_RETRIES:
            await self._dead_letter(item, item.last_error, result)
            return
        await self.store.update_queue_item(item)
        result.failed += 1

    async def _fail(self, item: SyncQueueItem, error: Exception, result: DrainResult):
        item.retry_count += 1
        item.last_error = str(error)
        result.errors.append(f"{item.id}: {error}")

        permanent = isinstance(error, RemoteStoreError) and not error.retryable
        if permanent or item.retry_count >= MAX_RETRIES:
            reason = f"Rejected by remote store: {error}" if permanent else f"Gave up after {item.retry_count} attempts: {error}"
            await self._dead_letter(item, reason, result)
            return

        item.next_retry_at = self._now() + backoff_delay(item.retry_count)
        await self.store.update_queue_item(item)
        result.failed += 1
        await self.error_log.record(
            "SYNC_RETRY_SCHEDULED",
            f"Sync of {item.table}/{item.record_id} failed, retry {item.retry_count} at {format_instant(item.next_retry_at)}: {error}",
            category=ErrorCategory.SYNC_TRANSIENT,
            severity=Severity.WARNING,
            metadata={"queue_item_id": item.id, "retry_count": item.retry_count},
        )

    async def _dead_letter(self, item: SyncQueueItem, reason: str, result: DrainResult):
        await self.store.move_to_dead_letter(item, reason)
        result.dead_lettered += 1
        await self.error_log.record(
            "SYNC_DEAD_LETTERED",
            f"Sync item {item.id} for {item.table}/{item.record_id} moved to dead letter: {reason}",
            category=ErrorCategory.SYNC_TRANSIENT,
            severity=Severity.ERROR,
            metadata={"queue_item_id": item.id, "retry_count": item.retry_count},
        )

    async def queue_status(self) -> Dict[str, Any]:
        items = await self.store.list_queue()
        dead = await self.store.list_dead_letter()
        by_operation = {op.value: 0 for op in SyncOperation}
        for item in items:
            by_operation[item.operation.value] += 1
        oldest = min((item.enqueued_at for item in items), default=None)
        return {
            "total": len(items),
            "by_operation": by_operation,
            "failed": sum(1 for item in items if item.retry_count > 0),
            "oldest_enqueued_at": format_instant(oldest),
            "dead_letter": len(dead),
            "last_sync_at": format_instant(self.last_sync_at),
            "needs_sync": self.needs_sync(),
        }

    async def dead_letter_items(self) -> List[DeadLetterItem]:
        return await self.store.list_dead_letter()

    async def requeue_dead_letter(self, dead_letter_id: int) -> Optional[SyncQueueItem]:
        """Move a dead-lettered item back to the end of the queue with a fresh retry budget."""
        entry = await self.store.remove_dead_letter(dead_letter_id)
        if entry is None:
            return None
        item = entry.item
        item.id = None
        item.retry_count = 0
        item.next_retry_at = None
        item.last_error = None
        item.conflict = None
        item = await self.store.append_queue_item(item)
        logger.info(f"Requeued dead-letter entry {dead_letter_id} as item {item.id}")
        return item

    def needs_sync(self) -> bool:
        """True if never drained or the last drain is more than an hour old."""
        if self.last_sync_at is None:
            return True
        return self._now() - self.last_sync_at > STALE_AFTER
