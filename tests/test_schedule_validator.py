from datetime import date, timedelta

from remindsync.models.frequency import Custom, Daily, Minutely, Once, TimeOfDay

from tests.conftest import START


def test_validate_keeps_candidate_with_enough_lead(validator):
    candidate = START + timedelta(minutes=2)
    assert validator.validate(candidate) == candidate


def test_validate_pushes_close_candidate_out(validator):
    assert validator.validate(START + timedelta(seconds=30)) == START + timedelta(minutes=1)
    assert validator.validate(START - timedelta(hours=1)) == START + timedelta(minutes=1)


def test_adjust_past_time_today_moves_to_tomorrow(validator):
    adjusted, was_adjusted = validator.adjust_for_conflict(START - timedelta(hours=1))
    assert was_adjusted
    assert adjusted == START + timedelta(days=1, hours=-1)


def test_adjust_past_time_on_earlier_day(validator):
    adjusted, was_adjusted = validator.adjust_for_conflict(START - timedelta(days=2))
    assert was_adjusted
    assert adjusted == START + timedelta(minutes=1)


def test_adjust_too_close(validator):
    adjusted, was_adjusted = validator.adjust_for_conflict(START + timedelta(seconds=10), interactive=False)
    assert was_adjusted
    assert adjusted == START + timedelta(minutes=1)


def test_adjust_leaves_future_time_alone(validator):
    candidate = START + timedelta(hours=2)
    assert validator.adjust_for_conflict(candidate) == (candidate, False)


def test_precise_schedule_time_for_minute_frequencies(validator):
    assert validator.precise_schedule_time(Minutely(3), TimeOfDay(0, 0)) == START + timedelta(minutes=3)
    assert validator.precise_schedule_time(Custom(5, "minutes"), TimeOfDay(0, 0)) == START + timedelta(minutes=5)


def test_precise_schedule_time_uses_calculator_for_other_kinds(validator):
    assert validator.precise_schedule_time(Daily(), TimeOfDay(9, 0)) == START + timedelta(hours=1)
    assert validator.precise_schedule_time(Once(date(2024, 1, 1)), TimeOfDay(9, 0)) is None


def test_next_fire_from_reference(validator):
    reference = START + timedelta(days=1)
    assert validator.next_fire(Daily(), TimeOfDay(9, 0), reference) == START + timedelta(days=1, hours=1)
