"""
Reminder rule evaluation.

Everything here is pure: results depend only on the dates and rules passed
in, never on the wall clock.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Union

from credilife.schemas.notification_schema import (
    ChannelFlags,
    DueReminder,
    LoanPayment,
    PaymentReminder,
    ReminderDirectionEnum,
    ReminderSchedule,
)

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime]

# Seeded when the reminder_schedules table is empty
DEFAULT_REMINDER_SCHEDULES = [
    {"name": "7 Days Before Due", "schedule_type": "before", "days_offset": 7, "priority": 7},
    {"name": "3 Days Before Due", "schedule_type": "before", "days_offset": 3, "priority": 6},
    {"name": "1 Day Before Due", "schedule_type": "before", "days_offset": 1, "priority": 5},
    {"name": "Due Date", "schedule_type": "due", "days_offset": 0, "priority": 4},
    {"name": "1 Day Overdue", "schedule_type": "after", "days_offset": -1, "priority": 3},
    {"name": "3 Days Overdue", "schedule_type": "after", "days_offset": -3, "priority": 2},
    {"name": "7 Days Overdue", "schedule_type": "after", "days_offset": -7, "priority": 1},
]


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def days_between(today: DateLike, due_date: DateLike) -> int:
    """Whole calendar days from `today` to `due_date`; negative once the due date has passed."""
    return (_as_date(due_date) - _as_date(today)).days


def rule_matches(rule: ReminderSchedule, days_until_due: int) -> bool:
    if not rule.enabled:
        return False
    if rule.direction == ReminderDirectionEnum.before:
        return days_until_due > 0 and days_until_due == rule.days_offset
    if rule.direction == ReminderDirectionEnum.due:
        return days_until_due == 0
    if rule.direction == ReminderDirectionEnum.after:
        return days_until_due < 0 and abs(days_until_due) == rule.days_offset
    return False


def find_due_reminders(
    due_date: DateLike,
    today: DateLike,
    rules: Iterable[ReminderSchedule],
) -> List[DueReminder]:
    """
    Return every enabled rule that fires on `today` for an installment due on `due_date`.

    Each match carries the signed day count (positive = days until due,
    0 = due today, negative = days overdue). Matches keep the order of
    `rules`; duplicates are not collapsed.
    """
    days_until_due = days_between(today, due_date)
    return [
        DueReminder(rule=rule, days_until_due=days_until_due)
        for rule in rules
        if rule_matches(rule, days_until_due)
    ]


def get_payments_needing_reminders(
    payments: Iterable[LoanPayment],
    rules: Sequence[ReminderSchedule],
    today: DateLike,
) -> List[PaymentReminder]:
    reminders = []
    for payment in payments:
        for match in find_due_reminders(payment.due_date, today, rules):
            reminders.append(
                PaymentReminder(payment=payment, rule=match.rule, days_until_due=match.days_until_due)
            )
    return reminders


def trigger_date(due_date: DateLike, rule: ReminderSchedule) -> date:
    """Calendar day on which `rule` fires for an installment due on `due_date`."""
    due = _as_date(due_date)
    if rule.direction == ReminderDirectionEnum.before:
        return due - timedelta(days=rule.days_offset)
    if rule.direction == ReminderDirectionEnum.after:
        return due + timedelta(days=rule.days_offset)
    return due


def next_reminder_date(
    due_date: DateLike,
    rules: Iterable[ReminderSchedule],
    today: DateLike,
) -> Optional[date]:
    """Earliest day on or after `today` when any enabled rule fires for `due_date`, or None."""
    today = _as_date(today)
    candidates = [
        trigger_date(due_date, rule)
        for rule in rules
        if rule.enabled and (rule.direction == ReminderDirectionEnum.due or rule.days_offset > 0)
    ]
    upcoming = [day for day in candidates if day >= today]
    return min(upcoming) if upcoming else None


def rules_from_day_offsets(
    offsets: Iterable[int],
    channels: Optional[ChannelFlags] = None,
) -> List[ReminderSchedule]:
    """
    Build rules from signed day offsets (positive before due, 0 on the due
    date, negative overdue), as used by the custom-days scheduler mode.
    """
    channels = channels or ChannelFlags()
    rules = []
    for offset in dict.fromkeys(offsets):
        if offset > 0:
            direction, name = ReminderDirectionEnum.before, f"{offset} Days Before Due"
        elif offset == 0:
            direction, name = ReminderDirectionEnum.due, "Due Date"
        else:
            direction, name = ReminderDirectionEnum.after, f"{abs(offset)} Days Overdue"
        rules.append(
            ReminderSchedule(
                id=f"custom_{offset}",
                name=name,
                days_offset=abs(offset),
                direction=direction,
                enabled=True,
                email=channels.email,
                whatsapp=channels.whatsapp,
                sms=channels.sms,
            )
        )
    return rules


def default_reminder_records() -> List[dict]:
    """Rows for seeding `reminder_schedules`: email on, WhatsApp and SMS off."""
    return [
        {
            **schedule,
            "email_enabled": True,
            "whatsapp_enabled": False,
            "sms_enabled": False,
            "is_enabled": True,
        }
        for schedule in DEFAULT_REMINDER_SCHEDULES
    ]
