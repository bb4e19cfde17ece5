from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from enum import Enum
from typing import List, Dict, Any, Optional
from datetime import date, datetime, time, timezone
from decimal import Decimal

from credilife.core.exceptions import MalformedRecordWarning


class ChannelEnum(str, Enum):
    email = "email"
    whatsapp = "whatsapp"
    sms = "sms"


class ReminderDirectionEnum(str, Enum):
    before = "before"
    due = "due"
    after = "after"


class SchedulerModeEnum(str, Enum):
    interval = "interval"
    daily = "daily"
    custom_days = "custom_days"


class ReminderSchedule(BaseModel):
    """A configured reminder rule: when relative to the due date, and through which channels."""
    id: str
    name: str
    days_offset: int = Field(0, ge=0, description="Magnitude of the offset from the due date in days")
    direction: ReminderDirectionEnum = ReminderDirectionEnum.before
    enabled: bool = True
    email: bool = True
    whatsapp: bool = False
    sms: bool = False
    email_template_id: Optional[str] = None
    whatsapp_template_id: Optional[str] = None
    sms_template_id: Optional[str] = None
    priority: int = 0

    def channels(self) -> List[ChannelEnum]:
        flags = [
            (ChannelEnum.email, self.email),
            (ChannelEnum.whatsapp, self.whatsapp),
            (ChannelEnum.sms, self.sms),
        ]
        return [channel for channel, enabled in flags if enabled]

    def template_for(self, channel: ChannelEnum) -> Optional[str]:
        return getattr(self, f"{channel.value}_template_id")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ReminderSchedule":
        """Map a `reminder_schedules` row (signed days_offset, *_enabled flags) to a rule."""
        try:
            return cls(
                id=str(record["id"]),
                name=record.get("name") or f"Reminder {record['id']}",
                days_offset=abs(int(record.get("days_offset") or 0)),
                direction=record.get("schedule_type") or ReminderDirectionEnum.before.value,
                enabled=bool(record.get("is_enabled", True)),
                email=bool(record.get("email_enabled", True)),
                whatsapp=bool(record.get("whatsapp_enabled", False)),
                sms=bool(record.get("sms_enabled", False)),
                email_template_id=_optional_str(record.get("email_template_id")),
                whatsapp_template_id=_optional_str(record.get("whatsapp_template_id")),
                sms_template_id=_optional_str(record.get("sms_template_id")),
                priority=int(record.get("priority") or 0),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise MalformedRecordWarning(f"Unusable reminder schedule record {record.get('id')!r}: {e}") from e


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


class LoanPayment(BaseModel):
    """A pending installment joined with its loan and customer contact details."""
    installment_id: Optional[str] = None
    loan_id: str
    installment_number: int = 1
    customer_id: str
    customer_name: str = "Customer"
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    amount_due: Decimal
    due_date: date

    @field_validator("installment_id", "loan_id", "customer_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if value is not None else value

    @field_validator("customer_name", mode="before")
    @classmethod
    def _default_name(cls, value):
        return value or "Customer"

    @field_validator("customer_email", "customer_phone", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("due_date", mode="before")
    @classmethod
    def _truncate_datetime(cls, value):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and "T" in value:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        return value

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "LoanPayment":
        try:
            return cls(**record)
        except ValidationError as e:
            raise MalformedRecordWarning(
                f"Skipping installment record {record.get('installment_id') or record.get('id')!r}: {e}"
            ) from e
        except (TypeError, ValueError) as e:
            raise MalformedRecordWarning(f"Skipping installment record: {e}") from e


class DueReminder(BaseModel):
    rule: ReminderSchedule
    days_until_due: int


class PaymentReminder(BaseModel):
    payment: LoanPayment
    rule: ReminderSchedule
    days_until_due: int


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationResult(BaseModel):
    loan_id: str
    customer_id: str
    channel: ChannelEnum
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    rule_id: Optional[str] = None
    installment_number: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class MessageTemplate(BaseModel):
    id: str
    channel: ChannelEnum
    name: Optional[str] = None
    subject: Optional[str] = None
    body: str
    html_body: Optional[str] = None


class RenderedMessage(BaseModel):
    subject: Optional[str] = None
    body: str
    html_body: Optional[str] = None


class ChannelFlags(BaseModel):
    email: bool = True
    whatsapp: bool = False
    sms: bool = False


class SchedulerConfig(BaseModel):
    mode: SchedulerModeEnum = SchedulerModeEnum.interval
    interval_seconds: float = Field(60.0, gt=0)
    daily_time: str = Field("09:00", description="HH:MM in the scheduler timezone")
    days_before_due: List[int] = Field(default_factory=lambda: [7, 3], description="Signed offsets for custom_days mode; negative means overdue")
    custom_days_channels: ChannelFlags = Field(default_factory=ChannelFlags)
    check_every_seconds: float = Field(3600.0, gt=0, description="Wake-up cadence for custom_days mode")

    @field_validator("daily_time")
    @classmethod
    def _validate_daily_time(cls, value: str) -> str:
        parse_time_of_day(value)
        return value

    def time_of_day(self) -> time:
        return parse_time_of_day(self.daily_time)


def parse_time_of_day(value: str) -> time:
    try:
        hours, minutes = (int(part) for part in value.split(":"))
        return time(hour=hours, minute=minutes)
    except (ValueError, TypeError) as e:
        raise ValueError(f"daily_time must be HH:MM, got {value!r}") from e


class CycleSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    payments_checked: int = 0
    reminders_matched: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    skipped_records: int = 0
    skipped_duplicates: int = 0
    error: Optional[str] = None
    results: List[NotificationResult] = []


class SchedulerStatus(BaseModel):
    running: bool
    config: Optional[SchedulerConfig] = None
    started_at: Optional[datetime] = None
    last_cycle: Optional[CycleSummary] = None

    @property
    def state(self) -> str:
        return "running" if self.running else "stopped"


class SchedulerActionRequest(BaseModel):
    action: str = Field(..., description="start | stop | check | simulate")
    config: Optional[SchedulerConfig] = None
    simulated_date: Optional[date] = None
    force: bool = False

    @model_validator(mode="after")
    def _check_action(self):
        if self.action not in ("start", "stop", "check", "simulate"):
            raise ValueError(f"Invalid action: {self.action}")
        if self.action == "simulate" and self.simulated_date is None:
            raise ValueError("simulated_date is required for simulate")
        return self


class NotificationLogStats(BaseModel):
    total_notifications: int
    successful_notifications: int
    failed_notifications: int
    by_channel: Dict[str, int] = {}
