import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from remindsync.clock import Clock, as_utc, format_instant, parse_instant, utc_now
from remindsync.errors import SchedulingError
from remindsync.models.payload import NotificationPayload
from remindsync.models.record import ReminderRecord
from remindsync.services.error_log import ErrorCategory, ErrorLog, Severity
from remindsync.services.fallback import FallbackController

logger = logging.getLogger(__name__)

JOB_PREFIX = "reminder_"
MAX_ARM_ATTEMPTS = 3  # first try plus two retries
ARM_RETRY_DELAY = 0.5
ARM_FAILURE_RATIO = 0.5
MISFIRE_GRACE_SECONDS = 30

FireCallback = Callable[[int, Optional[Dict[str, Any]]], Awaitable[Any]]

# Job functions must be importable by reference for persistent job stores,
# so jobs carry the scheduler name and resolve the live instance here.
_registry: "weakref.WeakValueDictionary[str, TriggerScheduler]" = weakref.WeakValueDictionary()


class TriggerState(str, Enum):
    UNARMED = "unarmed"
    ARMED = "armed"
    FIRED = "fired"


class ArmResult(str, Enum):
    ARMED = "armed"
    SKIPPED_PAST = "skipped_past"
    SKIPPED_FALLBACK = "skipped_fallback"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass
class ArmedTrigger:
    record_id: int
    fire_at: datetime
    payload: Optional[Dict[str, Any]] = None
    job_id: str = field(default="")


def job_id_for(record_id: int) -> str:
    return f"{JOB_PREFIX}{record_id}"


def build_scheduler(jobstore_url: Optional[str] = None) -> AsyncIOScheduler:
    """
    Create the shared AsyncIOScheduler.

    Args:
        jobstore_url: Synchronous SQLAlchemy URL; when set, reminder triggers
            survive process restarts

    Returns:
        Scheduler with a ``default`` store for triggers and a ``memory``
        store for maintenance jobs
    """
    if jobstore_url:
        from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore

        default_store = SQLAlchemyJobStore(url=jobstore_url, tablename="reminder_triggers")
        logger.info("Using persistent job store for reminder triggers")
    else:
        default_store = MemoryJobStore()
    return AsyncIOScheduler(
        jobstores={"default": default_store, "memory": MemoryJobStore()},
        timezone="UTC",
    )


async def fire_reminder_job(scheduler_name: str, record_id: int, fire_at: Optional[str] = None):
    """APScheduler entry point for an armed trigger."""
    trigger_scheduler = _registry.get(scheduler_name)
    if trigger_scheduler is None:
        logger.warning(f"No trigger scheduler named {scheduler_name}, dropping fire for reminder {record_id}")
        return
    await trigger_scheduler.handle_fire(record_id, fire_at)


class TriggerScheduler:
    """
    Owns the armed trigger of every reminder.

    The in-process map is updated synchronously on disarm, so a disarm that
    happens before a fire is handled always wins. The APScheduler job store
    backs the map and is what actually wakes the process up.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        fallback: FallbackController,
        error_log: ErrorLog,
        store=None,
        clock: Clock = utc_now,
        name: str = "default",
        retry_delay: float = ARM_RETRY_DELAY,
    ):
        """
        Initialize the trigger scheduler.

        Args:
            scheduler: Shared AsyncIOScheduler (see ``build_scheduler``)
            fallback: Health state; arming is a no-op while in fallback
            error_log: Receives permanent arm failures
            store: RecordStore used by ``sweep``
            clock: Returns the current UTC instant
            name: Registry name carried by persisted jobs
            retry_delay: Seconds between arm attempts
        """
        self.scheduler = scheduler
        self.fallback = fallback
        self.error_log = error_log
        self.store = store
        self.clock = clock
        self.name = name
        self.retry_delay = retry_delay
        self.on_fire: Optional[FireCallback] = None
        self._armed: Dict[int, ArmedTrigger] = {}
        self._states: Dict[int, TriggerState] = {}
        self._generations: Dict[int, int] = {}
        _registry[name] = self

    def set_fire_callback(self, callback: FireCallback):
        self.on_fire = callback

    def state(self, record_id: int) -> TriggerState:
        return self._states.get(record_id, TriggerState.UNARMED)

    def armed(self, record_id: int) -> Optional[ArmedTrigger]:
        return self._armed.get(record_id)

    @property
    def armed_count(self) -> int:
        return len(self._armed)

    def start(self):
        """Start the scheduler and pick up triggers left in a persistent store."""
        if not self.scheduler.running:
            self.scheduler.start()
        self.restore()
        logger.info("Trigger scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Trigger scheduler shutdown")

    def restore(self) -> int:
        """Rebuild the in-process map from jobs already in the job store."""
        restored = 0
        for job in self.scheduler.get_jobs(jobstore="default"):
            if not job.id.startswith(JOB_PREFIX) or not job.args:
                continue
            record_id = int(job.id[len(JOB_PREFIX):])
            fire_at = parse_instant(job.args[2]) if len(job.args) > 2 else as_utc(job.trigger.run_date)
            self._armed[record_id] = ArmedTrigger(record_id, fire_at, None, job.id)
            self._states[record_id] = TriggerState.ARMED
            restored += 1
        if restored:
            logger.info(f"Restored {restored} armed triggers from the job store")
        return restored

    async def arm(
        self, record_id: int, fire_at: datetime, payload: Optional[Dict[str, Any]] = None
    ) -> ArmResult:
        """
        Arm the trigger of a reminder, replacing any existing one.

        Args:
            record_id: Local reminder id
            fire_at: When to fire
            payload: Notification payload map handed to the fire callback

        Returns:
            What happened; failures are logged, never raised
        """
        if self.fallback.in_fallback_mode:
            logger.info(f"Fallback mode active, not arming reminder {record_id}")
            return ArmResult.SKIPPED_FALLBACK

        self.disarm(record_id)
        fire_at = as_utc(fire_at)
        if fire_at <= as_utc(self.clock()):
            logger.info(f"Fire time {fire_at.isoformat()} for reminder {record_id} is in the past, not arming")
            return ArmResult.SKIPPED_PAST

        generation = self._generations.get(record_id, 0)
        job_id = job_id_for(record_id)
        last_error = None
        for attempt in range(1, MAX_ARM_ATTEMPTS + 1):
            if self._generations.get(record_id, 0) != generation:
                logger.info(f"Arming reminder {record_id} for {fire_at.isoformat()} was superseded")
                return ArmResult.SUPERSEDED
            try:
                self._add_job(record_id, fire_at)
                self._armed[record_id] = ArmedTrigger(record_id, fire_at, payload, job_id)
                self._states[record_id] = TriggerState.ARMED
                logger.info(f"Armed reminder {record_id} for {fire_at.isoformat()}")
                return ArmResult.ARMED
            except SchedulingError as e:
                last_error = e
                logger.warning(f"Arming reminder {record_id} failed (attempt {attempt}): {str(e)}")
                if attempt < MAX_ARM_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay)

        await self.error_log.record(
            "ARM_FAILED",
            f"Could not arm reminder {record_id}: {last_error}",
            category=ErrorCategory.SCHEDULING,
            severity=Severity.ERROR,
            metadata={"record_id": record_id, "fire_at": format_instant(fire_at)},
        )
        return ArmResult.FAILED

    def _add_job(self, record_id: int, fire_at: datetime):
        try:
            self.scheduler.add_job(
                fire_reminder_job,
                DateTrigger(run_date=fire_at),
                id=job_id_for(record_id),
                replace_existing=True,
                args=[self.name, record_id, format_instant(fire_at)],
                jobstore="default",
                misfire_grace_time=MISFIRE_GRACE_SECONDS,
            )
        except Exception as e:
            raise SchedulingError(f"Job store rejected trigger for reminder {record_id}: {e}") from e

    def disarm(self, record_id: int) -> bool:
        """Cancel the trigger of a reminder. Returns False if none was armed."""
        self._generations[record_id] = self._generations.get(record_id, 0) + 1
        entry = self._armed.pop(record_id, None)
        if self._states.get(record_id) == TriggerState.ARMED:
            self._states[record_id] = TriggerState.UNARMED
        try:
            self.scheduler.remove_job(job_id_for(record_id))
        except JobLookupError:
            pass
        if entry is not None:
            logger.info(f"Disarmed reminder {record_id}")
        return entry is not None

    async def arm_all(self, records: Iterable[ReminderRecord]) -> Dict[str, int]:
        """
        Arm every schedulable record, isolating failures per record.

        Requests fallback mode when more than half of the attempted arms fail.
        """
        records = list(records)
        summary = {"armed": 0, "failed": 0, "skipped": 0}
        if self.fallback.in_fallback_mode:
            logger.info(f"Fallback mode active, skipping arming of {len(records)} reminders")
            summary["skipped"] = len(records)
            return summary

        for record in records:
            if not record.is_schedulable:
                self.disarm(record.id)
                summary["skipped"] += 1
                continue
            payload = NotificationPayload(
                record_id=record.id,
                title=record.title,
                category=record.category,
                scheduled_at=record.next_fire_at,
            ).to_map()
            try:
                result = await self.arm(record.id, record.next_fire_at, payload)
            except Exception as e:
                logger.error(f"Error arming reminder {record.id}: {str(e)}")
                result = ArmResult.FAILED
            if result == ArmResult.ARMED:
                summary["armed"] += 1
            elif result == ArmResult.FAILED:
                summary["failed"] += 1
            else:
                summary["skipped"] += 1

        attempted = summary["armed"] + summary["failed"]
        if attempted and summary["failed"] / attempted > ARM_FAILURE_RATIO:
            await self.fallback.request_fallback(
                f"Arming failed for {summary['failed']} of {attempted} reminders"
            )
        logger.info(f"Armed {summary['armed']} reminders ({summary['failed']} failed, {summary['skipped']} skipped)")
        return summary

    async def sweep(self) -> Dict[str, int]:
        """Load the active reminders and arm them all. Never raises."""
        try:
            records = await self.store.list_active()
            return await self.arm_all(records)
        except Exception as e:
            await self.error_log.record(
                "SWEEP_FAILED",
                f"Scheduling sweep failed: {e}",
                category=ErrorCategory.SCHEDULING,
                severity=Severity.ERROR,
            )
            return {"armed": 0, "failed": 0, "skipped": 0}

    async def handle_fire(self, record_id: int, fire_at: Optional[str] = None) -> bool:
        """
        Run the fire callback for an armed reminder.

        A fire for a reminder that is no longer armed, or that was re-armed
        for a different instant, is dropped.

        Returns:
            True if the callback was invoked
        """
        entry = self._armed.get(record_id)
        if entry is None:
            logger.info(f"Reminder {record_id} is not armed, dropping fire")
            return False
        if fire_at is not None and parse_instant(fire_at) != entry.fire_at:
            logger.info(f"Stale fire for reminder {record_id} at {fire_at}, dropping")
            return False

        self._armed.pop(record_id, None)
        self._states[record_id] = TriggerState.FIRED
        logger.info(f"Reminder {record_id} fired")
        try:
            if self.on_fire is not None:
                await self.on_fire(record_id, entry.payload)
        except Exception as e:
            await self.error_log.record(
                "FIRE_CALLBACK_FAILED",
                f"Handling fire of reminder {record_id} failed: {e}",
                category=ErrorCategory.SCHEDULING,
                severity=Severity.ERROR,
                metadata={"record_id": record_id},
            )
        finally:
            if record_id not in self._armed:
                self._states[record_id] = TriggerState.UNARMED
        return True
