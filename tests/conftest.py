import pytest
from datetime import datetime
from typing import Any, Dict, List, Optional

from credilife.core.clock import FixedClock
from credilife.core.exceptions import ChannelSendError, PersistenceError
from credilife.schemas.notification_schema import (
    ChannelEnum,
    LoanPayment,
    ReminderDirectionEnum,
    ReminderSchedule,
    SendResult,
)
from credilife.services.dispatcher import NotificationDispatcher
from credilife.services.notification_log_service import InMemoryNotificationLog


class FakeInstallmentRepository:
    def __init__(self, records: Optional[List[Dict[str, Any]]] = None, fail_fetch: bool = False,
                 fail_create: bool = False, fail_delete: bool = False):
        self.records = records or []
        self.fail_fetch = fail_fetch
        self.fail_create = fail_create
        self.fail_delete = fail_delete
        self.batches: Dict[str, list] = {}
        self.deleted: List[str] = []
        self.fetch_calls = 0

    async def find_pending(self):
        self.fetch_calls += 1
        if self.fail_fetch:
            raise PersistenceError("database unreachable")
        return list(self.records)

    async def create_batch(self, loan_id, installments):
        if self.fail_create:
            raise PersistenceError("insert rejected")
        self.batches[loan_id] = list(installments)
        return [i.to_record() for i in installments]

    async def mark_deleted(self, loan_id):
        if self.fail_delete:
            raise PersistenceError("delete rejected")
        self.deleted.append(loan_id)
        return len(self.batches.pop(loan_id, []))


class FakeScheduleRepository:
    def __init__(self, rules: Optional[List[ReminderSchedule]] = None, fail: bool = False):
        self.rules = rules or []
        self.fail = fail
        self.seeded = 0

    async def find_enabled(self):
        if self.fail:
            raise PersistenceError("schedules unavailable")
        return sorted((r for r in self.rules if r.enabled), key=lambda r: r.priority, reverse=True)

    async def find_all(self):
        return sorted(self.rules, key=lambda r: r.priority, reverse=True)

    async def seed_defaults(self):
        if self.rules:
            return 0
        self.seeded += 1
        return 7


class FakeLoanRepository:
    def __init__(self, application: Optional[Dict[str, Any]] = None, fail_create: bool = False,
                 fail_status: bool = False, fail_delete: bool = False):
        self.application = application
        self.fail_create = fail_create
        self.fail_status = fail_status
        self.fail_delete = fail_delete
        self.loans: Dict[str, Dict[str, Any]] = {}
        self.status_updates: List[tuple] = []

    async def get_application(self, application_id):
        if self.application and str(self.application.get("id")) == application_id:
            return dict(self.application)
        return None

    async def create_loan(self, record):
        if self.fail_create:
            raise PersistenceError("loan insert rejected")
        self.loans[record["id"]] = record
        return record

    async def delete_loan(self, loan_id):
        if self.fail_delete:
            raise PersistenceError("loan delete rejected")
        self.loans.pop(loan_id, None)

    async def update_application_status(self, application_id, status, updated_at=None):
        # Only the forward transition fails, so the rollback can restore the old status
        if self.fail_status and status == "approved":
            raise PersistenceError("status update rejected")
        self.status_updates.append((application_id, status))
        if self.application:
            self.application["status"] = status


class RecordingEmailSender:
    configured = True

    def __init__(self, fail: bool = False, error: Optional[Exception] = None):
        self.fail = fail
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, to, subject, text_body, html_body=None):
        if self.error:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "body": text_body, "html": html_body})
        if self.fail:
            return SendResult(success=False, error="mailbox full")
        return SendResult(success=True, message_id=f"email-{len(self.sent)}")


class RecordingMessageSender:
    configured = True

    def __init__(self, channel: str = "whatsapp", error: Optional[Exception] = None):
        self.channel = channel
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, to, message):
        if self.error:
            raise self.error
        self.sent.append({"to": to, "message": message})
        return SendResult(success=True, message_id=f"{self.channel}-{len(self.sent)}")


def make_rule(id="r1", days_offset=7, direction=ReminderDirectionEnum.before, enabled=True,
              email=True, whatsapp=False, sms=False, priority=0, **kwargs) -> ReminderSchedule:
    return ReminderSchedule(
        id=id,
        name=f"Rule {id}",
        days_offset=days_offset,
        direction=direction,
        enabled=enabled,
        email=email,
        whatsapp=whatsapp,
        sms=sms,
        priority=priority,
        **kwargs,
    )


def make_payment_record(loan_id="loan-1", installment_number=1, due_date="2024-10-01",
                        email="ana@example.com", phone="+639171234567", amount="1041.67") -> Dict[str, Any]:
    return {
        "installment_id": f"{loan_id}-{installment_number}",
        "loan_id": loan_id,
        "installment_number": installment_number,
        "customer_id": "cust-1",
        "customer_name": "Ana Santos",
        "customer_email": email,
        "customer_phone": phone,
        "amount_due": amount,
        "due_date": due_date,
    }


def make_payment(**kwargs) -> LoanPayment:
    return LoanPayment.from_record(make_payment_record(**kwargs))


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 9, 24, 8, 0, 0))


@pytest.fixture
def notification_log():
    return InMemoryNotificationLog()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def whatsapp_sender():
    return RecordingMessageSender("whatsapp")


@pytest.fixture
def dispatcher(email_sender, whatsapp_sender, notification_log):
    return NotificationDispatcher(
        {ChannelEnum.email: email_sender, ChannelEnum.whatsapp: whatsapp_sender},
        log=notification_log,
    )


@pytest.fixture
def failing_email_dispatcher(whatsapp_sender, notification_log):
    senders = {
        ChannelEnum.email: RecordingEmailSender(error=ChannelSendError("email", "SMTP connection refused")),
        ChannelEnum.whatsapp: whatsapp_sender,
    }
    return NotificationDispatcher(senders, log=notification_log)
