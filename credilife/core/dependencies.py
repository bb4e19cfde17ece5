"""
Process-wide service instances, created on first use.

Routes receive these through FastAPI `Depends`, so tests swap them with
`app.dependency_overrides`.
"""

import logging
from functools import lru_cache

from credilife.core.clock import SystemClock
from credilife.core.config import settings
from credilife.core.idempotency import ReminderMarkerStore
from credilife.database.repositories import (
    InstallmentRepository,
    LoanRepository,
    ReminderScheduleRepository,
    TemplateRepository,
)
from credilife.schemas.notification_schema import ChannelEnum
from credilife.services.dispatcher import NotificationDispatcher
from credilife.services.notification_log_service import InMemoryNotificationLog, MongoNotificationLog
from credilife.services.notification_service import PhilSmsSender, SmtpEmailSender, TwilioWhatsAppSender
from credilife.services.template_service import TemplateRegistry
from credilife.workers.loan_approval_worker import LoanApprovalWorker
from credilife.workers.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def get_clock() -> SystemClock:
    return SystemClock()


@lru_cache(maxsize=None)
def get_installment_repository() -> InstallmentRepository:
    return InstallmentRepository()


@lru_cache(maxsize=None)
def get_schedule_repository() -> ReminderScheduleRepository:
    return ReminderScheduleRepository()


@lru_cache(maxsize=None)
def get_template_repository() -> TemplateRepository:
    return TemplateRepository()


@lru_cache(maxsize=None)
def get_loan_repository() -> LoanRepository:
    return LoanRepository()


@lru_cache(maxsize=None)
def get_notification_log():
    if settings.NOTIFICATION_LOG_BACKEND == "mongo":
        logger.info("Notification log stored in MongoDB")
        return MongoNotificationLog()
    return InMemoryNotificationLog()


@lru_cache(maxsize=None)
def get_template_registry() -> TemplateRegistry:
    return TemplateRegistry()


@lru_cache(maxsize=None)
def get_dispatcher() -> NotificationDispatcher:
    senders = {
        ChannelEnum.email: SmtpEmailSender(),
        ChannelEnum.whatsapp: TwilioWhatsAppSender(),
        ChannelEnum.sms: PhilSmsSender(),
    }
    return NotificationDispatcher(senders, templates=get_template_registry(), log=get_notification_log())


@lru_cache(maxsize=None)
def get_marker_store():
    if not settings.REMINDER_DEDUPE:
        return None
    return ReminderMarkerStore()


@lru_cache(maxsize=None)
def get_scheduler() -> ReminderScheduler:
    return ReminderScheduler(
        installments=get_installment_repository(),
        schedules=get_schedule_repository(),
        dispatcher=get_dispatcher(),
        clock=get_clock(),
        markers=get_marker_store(),
    )


@lru_cache(maxsize=None)
def get_approval_worker() -> LoanApprovalWorker:
    return LoanApprovalWorker(get_loan_repository(), get_installment_repository(), clock=get_clock())
