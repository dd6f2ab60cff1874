from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from letters_web.delivery import DeliveryBatchRunner
from letters_web.delivery_runs import InMemoryDeliveryRunRepository
from letters_web.letters import InMemoryLetterRepository
from letters_web.notifier import StubLetterNotifier
from letters_web.scheduler import DAILY_DELIVERY_JOB_ID, DailyDeliverySchedule


def _runner(runs: InMemoryDeliveryRunRepository | None = None) -> DeliveryBatchRunner:
    return DeliveryBatchRunner(
        repository=InMemoryLetterRepository(),
        notifier=StubLetterNotifier(enabled=True),
        run_repository=runs,
    )


def test_schedule_is_inactive_until_started() -> None:
    schedule = DailyDeliverySchedule(_runner())

    assert schedule.is_running is False
    assert schedule.next_run_at() is None
    assert schedule.cron_expression == "0 0 * * *"


def test_daily_trigger_fires_at_next_midnight() -> None:
    trigger = DailyDeliverySchedule(_runner()).daily_trigger()

    next_fire = trigger.get_next_fire_time(None, datetime(2026, 10, 19, 9, 15, tzinfo=timezone.utc))
    following = trigger.get_next_fire_time(next_fire, next_fire + timedelta(seconds=1))

    assert next_fire == datetime(2026, 10, 20, tzinfo=timezone.utc)
    assert following == datetime(2026, 10, 21, tzinfo=timezone.utc)


def test_start_arms_midnight_trigger_and_stop_disarms_it() -> None:
    schedule = DailyDeliverySchedule(_runner())
    armed_at = datetime.now(timezone.utc)
    schedule.start()
    try:
        assert schedule.is_running is True
        next_run = schedule.next_run_at()
        assert next_run is not None
        assert next_run.time() == time.min
        assert armed_at < next_run <= armed_at + timedelta(days=1)
    finally:
        schedule.stop()

    assert schedule.is_running is False
    assert schedule.next_run_at() is None


def test_start_is_idempotent() -> None:
    schedule = DailyDeliverySchedule(_runner())
    schedule.start()
    try:
        first_scheduler = schedule._scheduler
        schedule.start()
        assert schedule._scheduler is first_scheduler
        assert [job.id for job in first_scheduler.get_jobs()] == [DAILY_DELIVERY_JOB_ID]
    finally:
        schedule.stop()


def test_stop_without_start_is_a_no_op() -> None:
    schedule = DailyDeliverySchedule(_runner())
    schedule.stop()
    assert schedule.is_running is False


def test_trigger_uses_reference_time_zone() -> None:
    tokyo = ZoneInfo("Asia/Tokyo")
    schedule = DailyDeliverySchedule(_runner(), hour=0, minute=30, tz=tokyo)
    schedule.start()
    try:
        next_run = schedule.next_run_at()
        assert next_run is not None
        local = next_run.astimezone(tokyo)
        assert (local.hour, local.minute) == (0, 30)
    finally:
        schedule.stop()
    assert schedule.cron_expression == "30 0 * * *"


def test_fired_trigger_runs_a_scheduled_batch() -> None:
    runs = InMemoryDeliveryRunRepository()
    schedule = DailyDeliverySchedule(_runner(runs))

    schedule._fire()

    latest = runs.get_latest_run()
    assert latest is not None
    assert latest.trigger == "schedule"
    assert latest.status == "completed"
