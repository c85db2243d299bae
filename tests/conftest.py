import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from remindsync.bot.notifier import LoggingNotifier
from remindsync.clock import as_utc
from remindsync.db.database import build_engine, build_session_factory, init_db
from remindsync.db.record_store import RecordStore
from remindsync.errors import RemoteStoreError
from remindsync.models.frequency import Daily, TimeOfDay
from remindsync.models.record import ReminderRecord
from remindsync.scheduler.tasks import BackgroundTasks
from remindsync.scheduler.trigger import TriggerScheduler, build_scheduler
from remindsync.services.error_log import ErrorLog
from remindsync.services.fallback import FallbackController
from remindsync.services.recurrence import RecurrenceCalculator
from remindsync.services.reminder_service import ReminderService
from remindsync.services.schedule_validator import ScheduleTimeValidator
from remindsync.services.sync_engine import SyncEngine

# Wednesday
START = datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc)

_scheduler_names = itertools.count()


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime):
        self.now = as_utc(value)


class FakeRemoteStore:
    """In-memory stand-in for RemoteStoreClient."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.reachable = True
        self.error: Optional[RemoteStoreError] = None
        self.failures_left = 0
        self.calls: List[tuple] = []

    def rows(self, table: str = "reminders") -> Dict[str, Dict[str, Any]]:
        return self.tables.setdefault(table, {})

    def fail(self, times: int = -1, error: Optional[RemoteStoreError] = None):
        """Fail the next ``times`` calls; a negative count fails every call."""
        self.failures_left = times
        self.error = error

    def _maybe_fail(self):
        if self.failures_left == 0:
            return
        if self.failures_left > 0:
            self.failures_left -= 1
        raise self.error or RemoteStoreError("Service unavailable", status_code=503)

    async def is_reachable(self, table: str = "reminders") -> bool:
        return self.reachable

    async def fetch(self, table, remote_id):
        self.calls.append(("fetch", table, remote_id))
        self._maybe_fail()
        row = self.rows(table).get(remote_id)
        return dict(row) if row is not None else None

    async def insert(self, table, row):
        self.calls.append(("insert", table, row))
        self._maybe_fail()
        remote_id = str(uuid.uuid4())
        stored = dict(row, id=remote_id)
        self.rows(table)[remote_id] = stored
        return dict(stored)

    async def update(self, table, remote_id, row):
        self.calls.append(("update", table, remote_id))
        self._maybe_fail()
        if remote_id not in self.rows(table):
            return None
        self.rows(table)[remote_id].update({k: v for k, v in row.items() if k != "id"})
        return dict(self.rows(table)[remote_id])

    async def delete(self, table, remote_id):
        self.calls.append(("delete", table, remote_id))
        self._maybe_fail()
        return self.rows(table).pop(remote_id, None) is not None


def make_record(**changes) -> ReminderRecord:
    values = dict(
        title="Drink water",
        category="Health",
        frequency=Daily(),
        time_of_day=TimeOfDay(9, 0),
        created_at=START,
        updated_at=START,
        next_fire_at=START + timedelta(hours=1),
    )
    values.update(changes)
    return ReminderRecord(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/remindsync-test.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def error_log(session_factory, clock):
    return ErrorLog(session_factory, clock=clock)


@pytest.fixture
def store(session_factory, error_log, clock):
    return RecordStore(session_factory, error_log=error_log, clock=clock)


@pytest.fixture
def fallback(session_factory, error_log, clock):
    return FallbackController(session_factory, error_log, clock=clock)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def sync_engine(store, remote, error_log, clock):
    return SyncEngine(store, remote, error_log, clock=clock)


@pytest.fixture
def scheduler():
    # Never started: jobs stay pending and are only fired by calling handle_fire
    return build_scheduler()


@pytest.fixture
def triggers(scheduler, fallback, error_log, store, clock):
    return TriggerScheduler(
        scheduler,
        fallback,
        error_log,
        store=store,
        clock=clock,
        name=f"test-{next(_scheduler_names)}",
        retry_delay=0,
    )


@pytest.fixture
def tasks(error_log):
    return BackgroundTasks(error_log)


@pytest.fixture
def calculator():
    return RecurrenceCalculator(timezone.utc)


@pytest.fixture
def validator(calculator, clock):
    return ScheduleTimeValidator(calculator, clock=clock)


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def service(store, validator, triggers, sync_engine, tasks, notifier, error_log, clock):
    return ReminderService(
        store, validator, triggers, sync_engine, tasks,
        notifier=notifier, error_log=error_log, clock=clock,
    )
