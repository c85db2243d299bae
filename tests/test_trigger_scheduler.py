import asyncio
from datetime import timedelta

from remindsync.clock import format_instant
from remindsync.models.record import ReminderStatus
from remindsync.scheduler.trigger import (
    MAX_ARM_ATTEMPTS,
    ArmResult,
    TriggerScheduler,
    TriggerState,
    fire_reminder_job,
    job_id_for,
)

from tests.conftest import START, make_record


class Recorder:
    def __init__(self, triggers=None):
        self.calls = []
        self.states = []
        self.triggers = triggers

    async def __call__(self, record_id, payload):
        self.calls.append((record_id, payload))
        if self.triggers is not None:
            self.states.append(self.triggers.state(record_id))


def reminder_jobs(scheduler):
    return [job for job in scheduler.get_jobs() if job.id.startswith("reminder_")]


async def test_arm_creates_single_job(triggers, scheduler):
    fire_at = START + timedelta(minutes=5)
    assert await triggers.arm(1, fire_at, {"id": 1}) == ArmResult.ARMED
    assert triggers.state(1) == TriggerState.ARMED
    assert triggers.armed(1).fire_at == fire_at
    assert [job.id for job in reminder_jobs(scheduler)] == [job_id_for(1)]


async def test_arming_twice_keeps_one_trigger(triggers, scheduler):
    await triggers.arm(1, START + timedelta(minutes=5))
    await triggers.arm(1, START + timedelta(minutes=10))

    assert len(reminder_jobs(scheduler)) == 1
    assert triggers.armed(1).fire_at == START + timedelta(minutes=10)
    assert triggers.armed_count == 1


async def test_disarm_before_fire_suppresses_callback(triggers, scheduler):
    recorder = Recorder()
    triggers.set_fire_callback(recorder)

    await triggers.arm(1, START + timedelta(minutes=5))
    assert triggers.disarm(1)
    assert not await triggers.handle_fire(1)

    assert recorder.calls == []
    assert reminder_jobs(scheduler) == []
    assert triggers.state(1) == TriggerState.UNARMED
    assert not triggers.disarm(1)


async def test_past_fire_time_is_not_armed(triggers, scheduler):
    assert await triggers.arm(1, START - timedelta(seconds=1)) == ArmResult.SKIPPED_PAST
    assert await triggers.arm(2, START) == ArmResult.SKIPPED_PAST
    assert reminder_jobs(scheduler) == []


async def test_arm_is_noop_in_fallback(triggers, fallback, scheduler):
    await fallback.request_fallback("test")
    assert await triggers.arm(1, START + timedelta(minutes=5)) == ArmResult.SKIPPED_FALLBACK
    assert reminder_jobs(scheduler) == []


async def test_fire_runs_callback_once(triggers):
    recorder = Recorder(triggers)
    triggers.set_fire_callback(recorder)
    await triggers.arm(1, START + timedelta(minutes=5), {"id": 1, "title": "Stretch"})

    assert await triggers.handle_fire(1)
    assert recorder.calls == [(1, {"id": 1, "title": "Stretch"})]
    assert recorder.states == [TriggerState.FIRED]
    assert triggers.state(1) == TriggerState.UNARMED

    assert not await triggers.handle_fire(1)
    assert len(recorder.calls) == 1


async def test_callback_may_rearm(triggers, clock):
    async def rearm(record_id, payload):
        await triggers.arm(record_id, clock() + timedelta(minutes=5))

    triggers.set_fire_callback(rearm)
    await triggers.arm(1, START + timedelta(minutes=5))
    await triggers.handle_fire(1)
    assert triggers.state(1) == TriggerState.ARMED


async def test_stale_fire_is_dropped(triggers):
    recorder = Recorder()
    triggers.set_fire_callback(recorder)
    await triggers.arm(1, START + timedelta(minutes=5))
    await triggers.arm(1, START + timedelta(minutes=10))

    assert not await triggers.handle_fire(1, format_instant(START + timedelta(minutes=5)))
    assert recorder.calls == []
    assert await triggers.handle_fire(1, format_instant(START + timedelta(minutes=10)))


async def test_job_function_routes_to_named_scheduler(triggers):
    recorder = Recorder()
    triggers.set_fire_callback(recorder)
    fire_at = START + timedelta(minutes=5)
    await triggers.arm(3, fire_at)

    job = reminder_jobs(triggers.scheduler)[0]
    await fire_reminder_job(*job.args)
    assert [call[0] for call in recorder.calls] == [3]

    await fire_reminder_job("unknown-scheduler", 3, format_instant(fire_at))


async def test_callback_errors_are_logged(triggers, error_log):
    async def broken(record_id, payload):
        raise RuntimeError("renderer crashed")

    triggers.set_fire_callback(broken)
    await triggers.arm(1, START + timedelta(minutes=5))
    assert await triggers.handle_fire(1)

    assert (await error_log.recent(1))[0].code == "FIRE_CALLBACK_FAILED"
    assert triggers.state(1) == TriggerState.UNARMED


async def test_arm_retries_then_fails(triggers, scheduler, error_log, monkeypatch):
    attempts = []

    def failing_add_job(*args, **kwargs):
        attempts.append(kwargs["id"])
        raise RuntimeError("job store unavailable")

    monkeypatch.setattr(scheduler, "add_job", failing_add_job)
    assert await triggers.arm(1, START + timedelta(minutes=5)) == ArmResult.FAILED
    assert len(attempts) == MAX_ARM_ATTEMPTS
    assert triggers.state(1) == TriggerState.UNARMED

    entry = (await error_log.recent(1))[0]
    assert entry.code == "ARM_FAILED"
    assert entry.metadata["record_id"] == 1
    assert "Job store rejected trigger for reminder 1: job store unavailable" in entry.message


async def test_retrying_arm_does_not_override_newer_arm(triggers, scheduler, monkeypatch):
    original = scheduler.add_job
    attempts = []

    def flaky_add_job(*args, **kwargs):
        attempts.append(kwargs["args"][2])
        if len(attempts) == 1:
            raise RuntimeError("job store busy")
        return original(*args, **kwargs)

    monkeypatch.setattr(scheduler, "add_job", flaky_add_job)
    stale, fresh = await asyncio.gather(
        triggers.arm(1, START + timedelta(minutes=5)),
        triggers.arm(1, START + timedelta(minutes=30)),
    )

    assert stale == ArmResult.SUPERSEDED
    assert fresh == ArmResult.ARMED
    assert attempts == [format_instant(START + timedelta(minutes=5)), format_instant(START + timedelta(minutes=30))]
    assert triggers.armed(1).fire_at == START + timedelta(minutes=30)
    assert len(reminder_jobs(scheduler)) == 1


async def test_disarm_during_arm_retry_wins(triggers, scheduler, monkeypatch):
    original = scheduler.add_job
    calls = []

    def flaky_add_job(*args, **kwargs):
        calls.append(kwargs["id"])
        if len(calls) == 1:
            triggers.disarm(1)
            raise RuntimeError("job store busy")
        return original(*args, **kwargs)

    monkeypatch.setattr(scheduler, "add_job", flaky_add_job)
    assert await triggers.arm(1, START + timedelta(minutes=5)) == ArmResult.SUPERSEDED
    assert len(calls) == 1
    assert triggers.state(1) == TriggerState.UNARMED
    assert reminder_jobs(scheduler) == []


async def test_arm_all_isolates_failures(triggers, scheduler, fallback, monkeypatch):
    original = scheduler.add_job

    def flaky_add_job(*args, **kwargs):
        if kwargs["id"] == job_id_for(2):
            raise RuntimeError("boom")
        return original(*args, **kwargs)

    monkeypatch.setattr(scheduler, "add_job", flaky_add_job)
    records = [
        make_record(id=1),
        make_record(id=2),
        make_record(id=3),
        make_record(id=4, status=ReminderStatus.PAUSED),
    ]
    summary = await triggers.arm_all(records)

    assert summary == {"armed": 2, "failed": 1, "skipped": 1}
    assert triggers.armed(1).payload["title"] == "Drink water"
    assert not fallback.in_fallback_mode


async def test_arm_all_mostly_failing_requests_fallback(triggers, scheduler, fallback, monkeypatch):
    original = scheduler.add_job

    def flaky_add_job(*args, **kwargs):
        if kwargs["id"] != job_id_for(1):
            raise RuntimeError("boom")
        return original(*args, **kwargs)

    monkeypatch.setattr(scheduler, "add_job", flaky_add_job)
    summary = await triggers.arm_all([make_record(id=i) for i in (1, 2, 3)])

    assert summary["failed"] == 2
    assert fallback.in_fallback_mode

    # Nothing is armed while in fallback
    summary = await triggers.arm_all([make_record(id=5)])
    assert summary == {"armed": 0, "failed": 0, "skipped": 1}


async def test_sweep_arms_active_records(triggers, store):
    active = await store.insert(make_record())
    await store.insert(make_record(status=ReminderStatus.PAUSED))

    summary = await triggers.sweep()
    assert summary["armed"] == 1
    assert triggers.state(active.id) == TriggerState.ARMED


async def test_restore_from_job_store(triggers, scheduler, fallback, error_log, clock):
    await triggers.arm(7, START + timedelta(minutes=5))

    restarted = TriggerScheduler(scheduler, fallback, error_log, clock=clock, name=f"{triggers.name}-restarted")
    assert restarted.restore() == 1
    assert restarted.armed(7).fire_at == START + timedelta(minutes=5)
