"""
Background reminder scheduler.

One `ReminderScheduler` owns at most one timer task. The timer launches each
cycle as its own task and waits on it through `asyncio.shield`, so stopping
or restarting the scheduler never interrupts a cycle that is already running.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from credilife.core.clock import SystemClock
from credilife.core.config import settings
from credilife.core.exceptions import CycleFetchError, MalformedRecordWarning
from credilife.core.idempotency import ReminderMarkerStore, reminder_key
from credilife.schemas.notification_schema import (
    CycleSummary,
    LoanPayment,
    PaymentReminder,
    ReminderSchedule,
    SchedulerConfig,
    SchedulerModeEnum,
    SchedulerStatus,
)
from credilife.services.dispatcher import NotificationDispatcher
from credilife.services.reminder_service import (
    get_payments_needing_reminders,
    rules_from_day_offsets,
)

logger = logging.getLogger(__name__)


class PendingInstallmentSource(Protocol):
    async def find_pending(self) -> List[Dict[str, Any]]:
        ...


class ReminderRuleSource(Protocol):
    async def find_enabled(self) -> List[ReminderSchedule]:
        ...


def next_daily_run(after: datetime, daily_time) -> datetime:
    """First occurrence of `daily_time` strictly after `after`, in the same timezone."""
    target = datetime.combine(after.date(), daily_time, tzinfo=after.tzinfo)
    if target <= after:
        target = datetime.combine(after.date() + timedelta(days=1), daily_time, tzinfo=after.tzinfo)
    return target


def seconds_between(start: datetime, end: datetime) -> float:
    # Aware datetimes sharing a ZoneInfo subtract as wall time, which is off by an hour across DST
    if start.tzinfo is not None and end.tzinfo is not None:
        start, end = start.astimezone(timezone.utc), end.astimezone(timezone.utc)
    return (end - start).total_seconds()


def seconds_until(now: datetime, daily_time) -> float:
    """Seconds from `now` to the next occurrence of `daily_time`; today if it has not passed yet."""
    return seconds_between(now, next_daily_run(now, daily_time))


def default_config() -> SchedulerConfig:
    return SchedulerConfig(
        mode=settings.SCHEDULER_MODE,
        interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
        daily_time=settings.SCHEDULER_DAILY_TIME,
    )


class ReminderScheduler:
    def __init__(
        self,
        installments: PendingInstallmentSource,
        schedules: ReminderRuleSource,
        dispatcher: NotificationDispatcher,
        clock=None,
        markers: Optional[ReminderMarkerStore] = None,
        dispatch_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.installments = installments
        self.schedules = schedules
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.markers = markers
        self.dispatch_delay = settings.REMINDER_DISPATCH_DELAY_SECONDS if dispatch_delay is None else dispatch_delay
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()
        self._config: Optional[SchedulerConfig] = None
        self._started_at: Optional[datetime] = None
        self._last_cycle: Optional[CycleSummary] = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def config(self) -> Optional[SchedulerConfig]:
        return self._config

    async def start(self, config: Optional[SchedulerConfig] = None) -> SchedulerStatus:
        """Start, or restart with a new config. Any previous timer is cancelled first."""
        config = config or default_config()
        async with self._lock:
            await self._cancel_timer()
            self._config = config
            self._started_at = self.clock.now()
            self._timer = asyncio.create_task(self._run_timer(config), name="reminder-scheduler-timer")
        logger.info(f"Reminder scheduler started in {config.mode.value} mode")
        return self.status()

    async def stop(self) -> SchedulerStatus:
        async with self._lock:
            was_running = self.running
            await self._cancel_timer()
            self._started_at = None
        if was_running:
            logger.info("Reminder scheduler stopped")
        return self.status()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self.running,
            config=self._config,
            started_at=self._started_at,
            last_cycle=self._last_cycle,
        )

    def check_now(self, force: bool = False) -> "asyncio.Task[CycleSummary]":
        """Run one cycle immediately, whether or not the timer is running."""
        return self._launch_cycle(self._config or default_config(), force=force)

    async def wait_for_cycles(self) -> None:
        """Wait for every cycle currently in flight."""
        if self._cycles:
            await asyncio.gather(*list(self._cycles), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.stop()
        await self.wait_for_cycles()

    async def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    def _launch_cycle(self, config: SchedulerConfig, today: Optional[date] = None,
                      force: bool = False) -> "asyncio.Task[CycleSummary]":
        task = asyncio.create_task(self.run_cycle(config, today=today, force=force), name="reminder-cycle")
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task

    def _period_seconds(self, config: SchedulerConfig) -> float:
        if config.mode == SchedulerModeEnum.custom_days:
            return config.check_every_seconds
        return config.interval_seconds

    async def _run_timer(self, config: SchedulerConfig) -> None:
        try:
            if config.mode == SchedulerModeEnum.daily:
                await self._run_daily(config)
            else:
                await self._run_periodic(config)
        except asyncio.CancelledError:
            logger.debug("Reminder scheduler timer cancelled")
            raise

    async def _run_daily(self, config: SchedulerConfig) -> None:
        daily_time = config.time_of_day()
        next_run = next_daily_run(self.clock.now(), daily_time)
        while True:
            delay = max(0.0, seconds_between(self.clock.now(), next_run))
            logger.info(f"Next daily reminder run at {next_run.isoformat()}, in {delay:.0f}s")
            await self._sleep(delay)
            await asyncio.shield(self._launch_cycle(config))
            # Anchor on the scheduled run so cycle duration or an early wake-up never shifts the next one
            next_run = next_daily_run(max(self.clock.now(), next_run), daily_time)

    async def _run_periodic(self, config: SchedulerConfig) -> None:
        period = self._period_seconds(config)
        while True:
            started = self.clock.now()
            await asyncio.shield(self._launch_cycle(config))
            elapsed = seconds_between(started, self.clock.now())
            await self._sleep(max(0.0, period - elapsed))

    async def _rules_for(self, config: SchedulerConfig) -> List[ReminderSchedule]:
        if config.mode == SchedulerModeEnum.custom_days:
            return rules_from_day_offsets(config.days_before_due, config.custom_days_channels)
        return await self.schedules.find_enabled()

    async def _fetch(self, config: SchedulerConfig):
        try:
            records = await self.installments.find_pending()
            rules = await self._rules_for(config)
        except Exception as e:
            raise CycleFetchError(f"Could not load reminder inputs: {e}") from e
        return records, rules

    def _to_payments(self, records: List[Dict[str, Any]], summary: Optional[CycleSummary] = None) -> List[LoanPayment]:
        payments = []
        for record in records:
            try:
                payments.append(LoanPayment.from_record(record))
            except MalformedRecordWarning as w:
                logger.warning(str(w))
                if summary is not None:
                    summary.skipped_records += 1
        return payments

    async def preview(self, today: date, config: Optional[SchedulerConfig] = None) -> List[PaymentReminder]:
        """Matches a cycle would dispatch on `today`, without sending anything. Raises CycleFetchError."""
        config = config or self._config or default_config()
        records, rules = await self._fetch(config)
        return get_payments_needing_reminders(self._to_payments(records), rules, today)

    async def _already_sent(self, key: str) -> bool:
        try:
            return await self.markers.is_marked(key)
        except Exception as e:
            logger.warning(f"Could not read reminder marker {key}: {e}")
            return False

    async def _mark_sent(self, key: str) -> None:
        try:
            await self.markers.mark(key)
        except Exception as e:
            logger.warning(f"Could not write reminder marker {key}: {e}")

    async def run_cycle(
        self,
        config: Optional[SchedulerConfig] = None,
        today: Optional[date] = None,
        force: bool = False,
    ) -> CycleSummary:
        """
        Fetch, evaluate and dispatch once.

        Never raises: a fetch failure ends the cycle early with `error` set,
        and a failure on one reminder does not stop the others.
        """
        config = config or self._config or default_config()
        today = today or self.clock.today()
        summary = CycleSummary(started_at=self.clock.now())
        logger.info(f"Reminder cycle started for {today.isoformat()}")

        try:
            records, rules = await self._fetch(config)
        except CycleFetchError as e:
            logger.error(str(e))
            summary.error = str(e)
            summary.finished_at = self.clock.now()
            self._last_cycle = summary
            return summary

        payments = self._to_payments(records, summary)
        summary.payments_checked = len(payments)
        matches = get_payments_needing_reminders(payments, rules, today)
        summary.reminders_matched = len(matches)

        dispatched = 0
        for match in matches:
            key = reminder_key(match.payment.loan_id, match.payment.installment_number, match.rule.id, today)
            if self.markers is not None and not force and await self._already_sent(key):
                logger.debug(f"Reminder {key} already sent, skipping")
                summary.skipped_duplicates += 1
                continue

            if dispatched and self.dispatch_delay:
                await self._sleep(self.dispatch_delay)
            dispatched += 1

            try:
                results = await self.dispatcher.dispatch(match.payment, match.rule, match.days_until_due)
            except Exception as e:
                logger.error(
                    f"Dispatch failed for loan {match.payment.loan_id} installment "
                    f"{match.payment.installment_number}: {e}",
                    exc_info=True,
                )
                continue

            summary.results.extend(results)
            sent = sum(1 for result in results if result.success)
            summary.notifications_sent += sent
            summary.notifications_failed += len(results) - sent
            if sent and self.markers is not None:
                await self._mark_sent(key)

        summary.finished_at = self.clock.now()
        self._last_cycle = summary
        logger.info(
            f"Reminder cycle finished: {summary.payments_checked} payments, "
            f"{summary.reminders_matched} matches, {summary.notifications_sent} sent, "
            f"{summary.notifications_failed} failed"
        )
        return summary
