import asyncio
import pytest
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from credilife.core.idempotency import ReminderMarkerStore
from credilife.schemas.notification_schema import ChannelFlags, SchedulerConfig, SchedulerModeEnum
from credilife.workers.reminder_scheduler import ReminderScheduler, next_daily_run, seconds_until

from tests.conftest import (
    FakeInstallmentRepository,
    FakeScheduleRepository,
    make_payment_record,
    make_rule,
)

TIMER_NAME = "reminder-scheduler-timer"


def _scheduler(dispatcher, clock, records=None, rules=None, **kwargs):
    installments = kwargs.pop("installments", None) or FakeInstallmentRepository(
        records if records is not None else [make_payment_record(due_date="2024-10-01")]
    )
    schedules = kwargs.pop("schedules", None) or FakeScheduleRepository(
        rules if rules is not None else [make_rule(days_offset=7)]
    )
    kwargs.setdefault("dispatch_delay", 0)
    return ReminderScheduler(installments, schedules, dispatcher, clock=clock, **kwargs)


def _active_timers():
    return [t for t in asyncio.all_tasks() if t.get_name() == TIMER_NAME and not t.done()]


@pytest.mark.asyncio
async def test_cycle_sends_matching_reminder(dispatcher, clock, email_sender):
    scheduler = _scheduler(dispatcher, clock)

    summary = await scheduler.run_cycle()

    assert summary.payments_checked == 1
    assert summary.reminders_matched == 1
    assert summary.notifications_sent == 1
    assert summary.error is None
    assert email_sender.sent[0]["to"] == "ana@example.com"
    assert scheduler.status().last_cycle == summary


@pytest.mark.asyncio
async def test_fetch_failure_ends_cycle_without_raising(dispatcher, clock, email_sender):
    scheduler = _scheduler(dispatcher, clock, installments=FakeInstallmentRepository(fail_fetch=True))

    summary = await scheduler.run_cycle()

    assert "database unreachable" in summary.error
    assert summary.notifications_sent == 0
    assert email_sender.sent == []


@pytest.mark.asyncio
async def test_fetch_failure_keeps_timer_running(dispatcher, clock):
    repo = FakeInstallmentRepository(fail_fetch=True)
    scheduler = _scheduler(dispatcher, clock, installments=repo)

    await scheduler.start(SchedulerConfig(mode=SchedulerModeEnum.interval, interval_seconds=0.02))
    await asyncio.sleep(0.1)

    assert scheduler.status().running
    assert repo.fetch_calls >= 2
    assert scheduler.status().last_cycle.error

    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_malformed_records_are_skipped(dispatcher, clock):
    broken = make_payment_record(loan_id="loan-2")
    broken.pop("customer_id")
    records = [broken, make_payment_record(loan_id="loan-1", due_date="2024-10-01"), {"loan_id": "x", "due_date": "soon"}]
    scheduler = _scheduler(dispatcher, clock, records=records)

    summary = await scheduler.run_cycle()

    assert summary.skipped_records == 2
    assert summary.payments_checked == 1
    assert summary.notifications_sent == 1


@pytest.mark.asyncio
async def test_one_failing_installment_does_not_stop_others(failing_email_dispatcher, clock, whatsapp_sender):
    records = [
        make_payment_record(loan_id="loan-1", due_date="2024-10-01"),
        make_payment_record(loan_id="loan-2", due_date="2024-10-01"),
    ]
    scheduler = _scheduler(failing_email_dispatcher, clock, records=records,
                           rules=[make_rule(days_offset=7, whatsapp=True)])

    summary = await scheduler.run_cycle()

    assert summary.notifications_failed == 2
    assert summary.notifications_sent == 2
    assert len(whatsapp_sender.sent) == 2


@pytest.mark.asyncio
async def test_restart_leaves_single_timer_with_new_config(dispatcher, clock):
    scheduler = _scheduler(dispatcher, clock)
    first = SchedulerConfig(mode=SchedulerModeEnum.interval, interval_seconds=3600)
    second = SchedulerConfig(mode=SchedulerModeEnum.interval, interval_seconds=1800)

    await scheduler.start(first)
    await scheduler.start(second)
    await asyncio.sleep(0)

    assert len(_active_timers()) == 1
    assert scheduler.status().config == second
    assert scheduler.status().running

    await scheduler.shutdown()
    assert _active_timers() == []


@pytest.mark.asyncio
async def test_stop_is_idempotent(dispatcher, clock):
    scheduler = _scheduler(dispatcher, clock)

    await scheduler.stop()
    await scheduler.start(SchedulerConfig(mode=SchedulerModeEnum.interval, interval_seconds=3600))
    first = await scheduler.stop()
    second = await scheduler.stop()

    assert first.running is False
    assert second.running is False
    assert second.state == "stopped"
    await scheduler.wait_for_cycles()


@pytest.mark.asyncio
async def test_stop_lets_in_flight_cycle_finish(dispatcher, clock, email_sender):
    class GatedRepository(FakeInstallmentRepository):
        def __init__(self, records):
            super().__init__(records)
            self.started = asyncio.Event()
            self.release = asyncio.Event()

        async def find_pending(self):
            self.started.set()
            await self.release.wait()
            return await super().find_pending()

    repo = GatedRepository([make_payment_record(due_date="2024-10-01")])
    scheduler = _scheduler(dispatcher, clock, installments=repo)

    await scheduler.start(SchedulerConfig(mode=SchedulerModeEnum.interval, interval_seconds=3600))
    await asyncio.wait_for(repo.started.wait(), timeout=1)
    await scheduler.stop()
    repo.release.set()
    await scheduler.wait_for_cycles()

    assert scheduler.status().running is False
    assert scheduler.status().last_cycle.notifications_sent == 1
    assert len(email_sender.sent) == 1


@pytest.mark.asyncio
async def test_check_now_runs_while_stopped(dispatcher, clock):
    scheduler = _scheduler(dispatcher, clock)

    task = scheduler.check_now()
    summary = await task

    assert isinstance(task, asyncio.Task)
    assert summary.notifications_sent == 1
    assert scheduler.status().running is False


@pytest.mark.asyncio
async def test_markers_prevent_duplicate_sends_until_forced(dispatcher, clock, email_sender):
    scheduler = _scheduler(dispatcher, clock, markers=ReminderMarkerStore(redis_url=""))

    first = await scheduler.run_cycle()
    second = await scheduler.run_cycle()
    forced = await scheduler.check_now(force=True)

    assert first.notifications_sent == 1
    assert second.notifications_sent == 0
    assert second.skipped_duplicates == 1
    assert forced.notifications_sent == 1
    assert len(email_sender.sent) == 2


@pytest.mark.asyncio
async def test_failed_send_is_not_marked(failing_email_dispatcher, clock):
    scheduler = _scheduler(failing_email_dispatcher, clock, markers=ReminderMarkerStore(redis_url=""))

    await scheduler.run_cycle()
    retry = await scheduler.run_cycle()

    assert retry.skipped_duplicates == 0
    assert retry.notifications_failed == 1


@pytest.mark.asyncio
async def test_custom_days_mode_uses_configured_offsets(dispatcher, clock, email_sender):
    scheduler = _scheduler(dispatcher, clock, schedules=FakeScheduleRepository(fail=True))
    config = SchedulerConfig(
        mode=SchedulerModeEnum.custom_days,
        days_before_due=[7, 3],
        custom_days_channels=ChannelFlags(email=True),
    )

    summary = await scheduler.run_cycle(config)

    assert summary.error is None
    assert summary.notifications_sent == 1
    assert summary.results[0].rule_id == "custom_7"


@pytest.mark.asyncio
async def test_dispatches_are_spaced_by_delay(dispatcher, clock):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    records = [
        make_payment_record(loan_id="loan-1", due_date="2024-10-01"),
        make_payment_record(loan_id="loan-2", due_date="2024-10-01"),
        make_payment_record(loan_id="loan-3", due_date="2024-10-01"),
    ]
    scheduler = _scheduler(dispatcher, clock, records=records, dispatch_delay=0.5, sleep=fake_sleep)

    await scheduler.run_cycle()

    assert sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_preview_does_not_send(dispatcher, clock, email_sender):
    scheduler = _scheduler(dispatcher, clock)

    matches = await scheduler.preview(date(2024, 9, 24))
    none_today = await scheduler.preview(date(2024, 9, 25))

    assert [m.days_until_due for m in matches] == [7]
    assert none_today == []
    assert email_sender.sent == []


@pytest.mark.asyncio
async def test_cycle_for_simulated_date(dispatcher, clock):
    scheduler = _scheduler(dispatcher, clock)
    summary = await scheduler.run_cycle(today=date(2024, 9, 25))
    assert summary.reminders_matched == 0


def test_seconds_until_daily_time():
    morning = datetime(2024, 9, 24, 8, 0)
    assert seconds_until(morning, time(9, 0)) == 3600
    assert seconds_until(datetime(2024, 9, 24, 10, 0), time(9, 0)) == 23 * 3600
    assert seconds_until(datetime(2024, 9, 24, 9, 0), time(9, 0)) == 24 * 3600


@pytest.mark.asyncio
async def test_daily_mode_waits_for_configured_time(dispatcher, clock, email_sender):
    sleeps = []
    gate = asyncio.Event()

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        await gate.wait()

    scheduler = _scheduler(dispatcher, clock, sleep=fake_sleep)
    await scheduler.start(SchedulerConfig(mode=SchedulerModeEnum.daily, daily_time="09:00"))
    await asyncio.sleep(0)

    assert sleeps == [3600]
    assert email_sender.sent == []

    await scheduler.shutdown()


def test_seconds_until_across_daylight_saving_changes():
    new_york = ZoneInfo("America/New_York")

    # 2024-03-10 springs forward, 2024-11-03 falls back
    assert seconds_until(datetime(2024, 3, 9, 9, 0, tzinfo=new_york), time(9, 0)) == 23 * 3600
    assert seconds_until(datetime(2024, 11, 2, 9, 0, tzinfo=new_york), time(9, 0)) == 25 * 3600
    assert next_daily_run(datetime(2024, 3, 9, 9, 0, tzinfo=new_york), time(9, 0)).hour == 9


def _slow_installments(clock, **advance):
    class SlowInstallments(FakeInstallmentRepository):
        async def find_pending(self):
            clock.advance(**advance)
            return await super().find_pending()

    return SlowInstallments([make_payment_record(due_date="2024-10-01")])


@pytest.mark.asyncio
async def test_daily_mode_next_run_ignores_cycle_duration(dispatcher, clock, email_sender):
    sleeps = []
    second_sleep = asyncio.Event()
    gate = asyncio.Event()

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 1:
            clock.advance(seconds=seconds)
            return
        second_sleep.set()
        await gate.wait()

    scheduler = _scheduler(dispatcher, clock, installments=_slow_installments(clock, minutes=10), sleep=fake_sleep)
    await scheduler.start(SchedulerConfig(mode=SchedulerModeEnum.daily, daily_time="09:00"))
    await asyncio.wait_for(second_sleep.wait(), timeout=1)

    assert sleeps == [3600, 23 * 3600 + 50 * 60]
    assert len(email_sender.sent) == 1

    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_interval_mode_measures_period_from_cycle_start(dispatcher, clock):
    sleeps = []
    first_sleep = asyncio.Event()
    gate = asyncio.Event()

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        first_sleep.set()
        await gate.wait()

    scheduler = _scheduler(dispatcher, clock, installments=_slow_installments(clock, seconds=10), sleep=fake_sleep)
    await scheduler.start(SchedulerConfig(mode=SchedulerModeEnum.interval, interval_seconds=60))
    await asyncio.wait_for(first_sleep.wait(), timeout=1)

    assert sleeps == [50]

    await scheduler.shutdown()
