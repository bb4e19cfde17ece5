"""
Notification dispatch.

Turns one (payment, rule) match into at most one send per channel. Channel
failures are recorded as failed results and never escape `dispatch`.
"""

import logging
from typing import Dict, List, Optional, Union

from credilife.core.exceptions import ChannelSendError
from credilife.schemas.notification_schema import (
    ChannelEnum,
    LoanPayment,
    NotificationResult,
    ReminderSchedule,
    SendResult,
)
from credilife.services.notification_log_service import NotificationLogSink
from credilife.services.notification_service import EmailSender, MessageSender
from credilife.services.template_service import TemplateRegistry

logger = logging.getLogger(__name__)

Sender = Union[EmailSender, MessageSender]


def _contact_for(channel: ChannelEnum, payment: LoanPayment) -> Optional[str]:
    if channel == ChannelEnum.email:
        return payment.customer_email
    return payment.customer_phone


class NotificationDispatcher:
    def __init__(
        self,
        senders: Dict[ChannelEnum, Sender],
        templates: Optional[TemplateRegistry] = None,
        log: Optional[NotificationLogSink] = None,
    ):
        self.senders = senders
        self.templates = templates or TemplateRegistry()
        self.log = log

    def sender_for(self, channel: ChannelEnum) -> Optional[Sender]:
        sender = self.senders.get(channel)
        if sender is None or not getattr(sender, "configured", True):
            return None
        return sender

    async def _send(self, channel: ChannelEnum, sender: Sender, to: str, payment: LoanPayment,
                    rule: ReminderSchedule, days_until_due: int) -> SendResult:
        message = self.templates.render(channel, payment, days_until_due, rule.template_for(channel))
        if channel == ChannelEnum.email:
            return await sender.send(to, message.subject, message.body, message.html_body)
        return await sender.send(to, message.body)

    async def _record(self, result: NotificationResult) -> None:
        if self.log is None:
            return
        try:
            await self.log.append(result)
        except Exception as e:
            logger.error(f"Failed to record {result.channel.value} notification for loan {result.loan_id}: {e}")

    async def dispatch(
        self,
        payment: LoanPayment,
        rule: ReminderSchedule,
        days_until_due: int,
    ) -> List[NotificationResult]:
        """
        Send the reminder on every channel the rule enables.

        A channel is skipped without a result when its sender is not
        configured or the payment has no contact for it. Each attempt
        produces exactly one result, successful or not.
        """
        results = []
        for channel in rule.channels():
            sender = self.sender_for(channel)
            if sender is None:
                logger.debug(f"No {channel.value} sender configured, skipping for loan {payment.loan_id}")
                continue

            to = _contact_for(channel, payment)
            if not to:
                logger.debug(f"Loan {payment.loan_id} has no {channel.value} contact, skipping")
                continue

            try:
                sent = await self._send(channel, sender, to, payment, rule, days_until_due)
                success = bool(sent and sent.success)
                message_id = sent.message_id if sent else None
                error = None if success else (sent.error if sent and sent.error else "Provider reported failure")
            except ChannelSendError as e:
                success, message_id, error = False, None, e.detail
            except Exception as e:
                logger.error(f"Unexpected {channel.value} error for loan {payment.loan_id}: {e}", exc_info=True)
                success, message_id, error = False, None, str(e) or type(e).__name__

            if success:
                logger.info(f"{channel.value} reminder sent for loan {payment.loan_id} (rule {rule.id})")
            else:
                logger.warning(f"{channel.value} reminder failed for loan {payment.loan_id} (rule {rule.id}): {error}")

            result = NotificationResult(
                loan_id=payment.loan_id,
                customer_id=payment.customer_id,
                channel=channel,
                success=success,
                message_id=message_id,
                error=error,
                rule_id=rule.id,
                installment_number=payment.installment_number,
            )
            await self._record(result)
            results.append(result)

        return results
