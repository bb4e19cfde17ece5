import html
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from credilife.core.config import settings
from credilife.schemas.notification_schema import (
    ChannelEnum,
    LoanPayment,
    MessageTemplate,
    ReminderDirectionEnum,
    RenderedMessage,
)

logger = logging.getLogger(__name__)


EMAIL_DEFAULTS = {
    ReminderDirectionEnum.before: MessageTemplate(
        id="default_email_before",
        channel=ChannelEnum.email,
        subject="Payment Reminder: {{amount_due}} due in {{days}} days",
        body=(
            "Dear {{customer_name}},\n\n"
            "This is a friendly reminder that your loan payment is coming up.\n\n"
            "Loan Details:\n"
            "- Loan ID: {{loan_id}}\n"
            "- Installment: #{{installment_number}}\n"
            "- Payment Amount: {{amount_due}}\n"
            "- Due Date: {{due_date}}\n"
            "- Days Remaining: {{days}}\n\n"
            "Please make sure your payment is made on or before the due date to avoid late fees.\n\n"
            "Best regards,\n{{company_name}} Team"
        ),
    ),
    ReminderDirectionEnum.due: MessageTemplate(
        id="default_email_due",
        channel=ChannelEnum.email,
        subject="Payment Due Today: {{amount_due}}",
        body=(
            "Dear {{customer_name}},\n\n"
            "Your loan payment is due today.\n\n"
            "Loan Details:\n"
            "- Loan ID: {{loan_id}}\n"
            "- Installment: #{{installment_number}}\n"
            "- Payment Amount: {{amount_due}}\n"
            "- Due Date: {{due_date}} (TODAY)\n\n"
            "Please make your payment today to avoid late fees.\n\n"
            "Best regards,\n{{company_name}} Team"
        ),
    ),
    ReminderDirectionEnum.after: MessageTemplate(
        id="default_email_after",
        channel=ChannelEnum.email,
        subject="Overdue Payment Notice: {{amount_due}} - {{days}} days overdue",
        body=(
            "Dear {{customer_name}},\n\n"
            "Your loan payment is now {{days}} days overdue.\n\n"
            "Loan Details:\n"
            "- Loan ID: {{loan_id}}\n"
            "- Installment: #{{installment_number}}\n"
            "- Payment Amount: {{amount_due}}\n"
            "- Original Due Date: {{due_date}}\n"
            "- Days Overdue: {{days}}\n\n"
            "Please make your payment as soon as possible to avoid additional fees. "
            "If you are having difficulty paying, contact us to discuss your options.\n\n"
            "Best regards,\n{{company_name}} Team"
        ),
    ),
}

# WhatsApp and SMS share the short form; SMS bodies are sanitized to ASCII by the sender
SHORT_DEFAULTS = {
    ReminderDirectionEnum.before: (
        "Payment Reminder\n\n"
        "Hello {{customer_name}}, your loan payment is due in {{days}} days.\n"
        "Loan ID: {{loan_id}}\nAmount: {{amount_due}}\nDue Date: {{due_date}}\n\n"
        "Please pay on time to avoid late fees.\n- {{company_name}} Team"
    ),
    ReminderDirectionEnum.due: (
        "Payment Due Today\n\n"
        "Hello {{customer_name}}, your loan payment is DUE TODAY.\n"
        "Loan ID: {{loan_id}}\nAmount: {{amount_due}}\nDue Date: {{due_date}}\n\n"
        "Please pay today to avoid late fees.\n- {{company_name}} Team"
    ),
    ReminderDirectionEnum.after: (
        "Overdue Payment Notice\n\n"
        "Hello {{customer_name}}, your loan payment is {{days}} days overdue.\n"
        "Loan ID: {{loan_id}}\nAmount: {{amount_due}}\nOriginal Due Date: {{due_date}}\n\n"
        "Please pay immediately to avoid additional fees.\n- {{company_name}} Team"
    ),
}


def direction_for(days_until_due: int) -> ReminderDirectionEnum:
    if days_until_due > 0:
        return ReminderDirectionEnum.before
    if days_until_due == 0:
        return ReminderDirectionEnum.due
    return ReminderDirectionEnum.after


def format_amount(amount: Decimal) -> str:
    return f"{settings.CURRENCY_SYMBOL}{Decimal(amount):,.2f}"


PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Names used by templates stored from the admin dashboard
PLACEHOLDER_ALIASES = {
    "customerName": "customer_name",
    "loanId": "loan_id",
    "installmentNumber": "installment_number",
    "amount": "amount_due",
    "amountDue": "amount_due",
    "dueDate": "due_date",
    "companyName": "company_name",
    "daysBeforeDue": "days_before_due",
    "daysOverdue": "days_overdue",
}


def template_variables(payment: LoanPayment, days_until_due: int) -> Dict[str, Any]:
    variables = {
        "customer_name": payment.customer_name,
        "loan_id": payment.loan_id,
        "installment_number": payment.installment_number,
        "amount_due": format_amount(payment.amount_due),
        "due_date": payment.due_date.strftime("%B %d, %Y"),
        "days": abs(days_until_due),
        "days_before_due": max(days_until_due, 0),
        "days_overdue": max(-days_until_due, 0),
        "company_name": settings.COMPANY_NAME,
    }
    for alias, name in PLACEHOLDER_ALIASES.items():
        variables[alias] = variables[name]
    return variables


def fill_placeholders(text: str, variables: Dict[str, Any], escape: bool = False) -> str:
    """Replace `{{name}}` placeholders; unknown names and single braces (CSS, JSON) are left untouched."""
    def substitute(match):
        name = match.group(1)
        if name not in variables:
            logger.warning(f"Unknown template placeholder {name!r}")
            return match.group(0)
        value = str(variables[name])
        return html.escape(value) if escape else value

    return PLACEHOLDER.sub(substitute, text)


def html_from_text(subject: str, body: str) -> str:
    paragraphs = "".join(
        f"<p>{html.escape(block).replace(chr(10), '<br>')}</p>"
        for block in body.split("\n\n")
    )
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        "<div style=\"max-width: 600px; margin: 0 auto; padding: 20px;\">"
        f"<h2 style=\"background: #06888D; color: white; padding: 16px; border-radius: 8px 8px 0 0;\">{html.escape(subject)}</h2>"
        f"<div style=\"background: #f9fafb; padding: 16px; border-radius: 0 0 8px 8px;\">{paragraphs}</div>"
        "</div></body></html>"
    )


class TemplateRegistry:
    """Message templates by id, with per-channel defaults for each reminder direction."""

    def __init__(self, templates: Optional[Iterable[MessageTemplate]] = None):
        self._templates: Dict[str, MessageTemplate] = {}
        for template in templates or []:
            self.register(template)

    def register(self, template: MessageTemplate) -> None:
        self._templates[template.id] = template

    def get(self, template_id: Optional[str]) -> Optional[MessageTemplate]:
        if not template_id:
            return None
        return self._templates.get(template_id)

    def load_records(self, records: Iterable[Dict[str, Any]]) -> int:
        """Register rows from the `notification_templates` table; malformed rows are skipped."""
        loaded = 0
        for record in records:
            try:
                self.register(MessageTemplate(
                    id=str(record["id"]),
                    channel=record.get("channel") or record.get("type"),
                    name=record.get("name"),
                    subject=record.get("subject") or None,
                    body=record["body"],
                    html_body=record.get("html_body") or record.get("html") or None,
                ))
                loaded += 1
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed template {record.get('id')!r}: {e}")
        logger.info(f"Loaded {loaded} notification templates")
        return loaded

    def default_for(self, channel: ChannelEnum, days_until_due: int) -> MessageTemplate:
        direction = direction_for(days_until_due)
        if channel == ChannelEnum.email:
            return EMAIL_DEFAULTS[direction]
        return MessageTemplate(
            id=f"default_{channel.value}_{direction.value}",
            channel=channel,
            body=SHORT_DEFAULTS[direction],
        )

    def render(
        self,
        channel: ChannelEnum,
        payment: LoanPayment,
        days_until_due: int,
        template_id: Optional[str] = None,
    ) -> RenderedMessage:
        """
        Render the message for one channel.

        Uses `template_id` when it names a registered template, otherwise
        the default for the channel and direction. Placeholders use the
        `{{name}}` form; unknown names are left in the text.
        """
        template = self.get(template_id)
        if template_id and template is None:
            logger.warning(f"Template {template_id} not found, using the {channel.value} default")
        if template is None:
            template = self.default_for(channel, days_until_due)

        variables = template_variables(payment, days_until_due)
        body = fill_placeholders(template.body, variables)
        subject = fill_placeholders(template.subject, variables) if template.subject else None

        html_body = None
        if channel == ChannelEnum.email:
            subject = subject or f"Payment Reminder: {variables['amount_due']}"
            if template.html_body:
                html_body = fill_placeholders(template.html_body, variables, escape=True)
            else:
                html_body = html_from_text(subject, body)

        return RenderedMessage(subject=subject, body=body, html_body=html_body)
