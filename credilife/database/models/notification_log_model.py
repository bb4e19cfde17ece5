from beanie import Document
from pydantic import Field
from datetime import datetime, timezone
from typing import Optional


class NotificationLog(Document):
    loan_id: str = Field(..., description="Loan the reminder was about")
    customer_id: str = Field(..., description="Customer the reminder was sent to")
    channel: str = Field(..., description="Delivery channel: 'email', 'whatsapp' or 'sms'")
    success: bool = Field(..., description="Whether the provider accepted the message")
    message_id: Optional[str] = Field(None, description="Provider message id when accepted")
    error: Optional[str] = Field(None, description="Failure detail when rejected")
    rule_id: Optional[str] = Field(None, description="Reminder schedule that triggered the send")
    installment_number: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="When the attempt was made")

    class Settings:
        name = "notification_logs"
        indexes = ["loan_id", "customer_id", "timestamp"]
