from remindsync.services.error_log import ErrorCategory, Severity
from remindsync.services.fallback import FallbackController


async def record_critical(error_log, times, category=ErrorCategory.SCHEDULING):
    for _ in range(times):
        await error_log.record("ARM_FAILED", "arm failed", category, Severity.ERROR)


async def test_three_critical_errors_stay_normal(fallback, error_log):
    await record_critical(error_log, 3)
    assert not fallback.in_fallback_mode


async def test_fourth_critical_error_enters_fallback(fallback, error_log):
    await record_critical(error_log, 3)
    await record_critical(error_log, 1, ErrorCategory.SYNC_TRANSIENT)
    assert fallback.in_fallback_mode
    assert "critical" in fallback.state.reason


async def test_non_critical_errors_do_not_count(fallback, error_log):
    for _ in range(5):
        await error_log.record("SYNC_RETRY_SCHEDULED", "retry", ErrorCategory.SYNC_TRANSIENT, Severity.WARNING)
        await error_log.record("INVALID_INPUT", "bad", ErrorCategory.VALIDATION, Severity.ERROR)
    assert not fallback.in_fallback_mode


async def test_errors_spread_over_hours_do_not_count(fallback, error_log, clock):
    for _ in range(6):
        await record_critical(error_log, 1)
        clock.advance(minutes=40)
    assert not fallback.in_fallback_mode


async def test_check_health_exits_only_after_errors_age_out(fallback, error_log, clock):
    await record_critical(error_log, 4)
    assert fallback.in_fallback_mode

    clock.advance(minutes=30)
    assert await fallback.check_health()
    assert fallback.in_fallback_mode

    clock.advance(hours=1)
    assert not await fallback.check_health()
    assert not fallback.in_fallback_mode
    assert (await error_log.recent(1))[0].code == "FALLBACK_EXITED"


async def test_fallback_is_never_left_without_check_health(fallback, error_log, clock):
    await record_critical(error_log, 4)
    clock.advance(days=1)
    await error_log.record("NOTE", "unrelated", ErrorCategory.GENERAL, Severity.INFO)
    assert fallback.in_fallback_mode


async def test_arm_batch_failure_holds_for_an_hour(fallback, clock):
    await fallback.request_fallback("arming failed for 3/4 reminders")
    assert fallback.in_fallback_mode

    clock.advance(minutes=59)
    assert await fallback.check_health()

    clock.advance(minutes=2)
    assert not await fallback.check_health()


async def test_background_permission(fallback, error_log):
    await fallback.set_background_permission(False)
    assert fallback.in_fallback_mode
    assert not fallback.background_permitted
    assert await fallback.check_health()

    await fallback.set_background_permission(True)
    assert fallback.in_fallback_mode
    assert not await fallback.check_health()

    codes = [e.code for e in await error_log.recent()]
    assert "BACKGROUND_PERMISSION_DENIED" in codes


async def test_state_survives_restart(fallback, session_factory, error_log):
    await fallback.request_fallback("arming failed")

    restarted = FallbackController(session_factory, error_log)
    state = await restarted.load()
    assert state.in_fallback_mode
    assert state.reason == "arming failed"


async def test_health_report(fallback, error_log):
    await record_critical(error_log, 2)
    report = await fallback.health_report()

    assert report["in_fallback_mode"] is False
    assert report["should_be_in_fallback_mode"] is False
    assert report["fallback_mode_correct"] is True
    assert report["error_counts"] == {"scheduling": 2}
    assert len(report["critical_errors"]) == 2
    assert "Check the trigger scheduler and its job store" in report["recommendations"]
