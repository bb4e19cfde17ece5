from decimal import Decimal
from typing import Any, Dict, List

from credilife.schemas.notification_schema import (
    CycleSummary,
    NotificationResult,
    PaymentReminder,
    SchedulerStatus,
)


def convert_decimals(obj):
    """Convert Decimal amounts to strings so they survive JSON encoding exactly."""
    if isinstance(obj, dict):
        return {key: convert_decimals(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_decimals(item) for item in obj]
    elif isinstance(obj, Decimal):
        return f"{obj:.2f}"
    return obj


def build_notification_entry(result: NotificationResult) -> Dict[str, Any]:
    return {
        "loan_id": result.loan_id,
        "customer_id": result.customer_id,
        "channel": result.channel.value,
        "success": result.success,
        "message_id": result.message_id,
        "error": result.error,
        "rule_id": result.rule_id,
        "installment_number": result.installment_number,
        "timestamp": result.timestamp.isoformat(),
    }


def build_cycle_response(summary: CycleSummary) -> Dict[str, Any]:
    response = {
        "started_at": summary.started_at.isoformat(),
        "finished_at": summary.finished_at.isoformat() if summary.finished_at else None,
        "payments_checked": summary.payments_checked,
        "reminders_matched": summary.reminders_matched,
        "notifications_sent": summary.notifications_sent,
        "notifications_failed": summary.notifications_failed,
        "skipped_records": summary.skipped_records,
        "skipped_duplicates": summary.skipped_duplicates,
        "error": summary.error,
        "results": [build_notification_entry(r) for r in summary.results],
    }
    # Clean up any None values for cleaner response
    return {k: v for k, v in response.items() if v is not None}


def build_scheduler_status(status: SchedulerStatus) -> Dict[str, Any]:
    return {
        "status": status.state,
        "running": status.running,
        "config": status.config.model_dump(mode="json") if status.config else None,
        "started_at": status.started_at.isoformat() if status.started_at else None,
        "last_cycle": build_cycle_response(status.last_cycle) if status.last_cycle else None,
    }


def build_preview_response(matches: List[PaymentReminder]) -> Dict[str, Any]:
    details = []
    for match in matches:
        days = match.days_until_due
        when = f"{days} days before due" if days > 0 else "on the due date" if days == 0 else f"{abs(days)} days overdue"
        details.append({
            "loan_id": match.payment.loan_id,
            "installment_number": match.payment.installment_number,
            "customer_id": match.payment.customer_id,
            "rule_id": match.rule.id,
            "rule_name": match.rule.name,
            "days_until_due": days,
            "channels": [channel.value for channel in match.rule.channels()],
            "amount_due": match.payment.amount_due,
            "due_date": match.payment.due_date.isoformat(),
            "message": f"Would send reminder for loan {match.payment.loan_id} installment "
                       f"#{match.payment.installment_number} ({when})",
        })
    return convert_decimals({
        "would_send": len(details),
        "details": details,
    })
