"""
Supabase-backed repositories.

supabase-py is synchronous, so every `execute()` runs in a worker thread to
keep the scheduler's event loop free. Failures surface as PersistenceError.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from credilife.core.exceptions import MalformedRecordWarning, PersistenceError
from credilife.core.supabase_client import get_supabase_client
from credilife.schemas.loan_schema import Installment
from credilife.schemas.notification_schema import ReminderSchedule
from credilife.services.reminder_service import default_reminder_records

logger = logging.getLogger(__name__)

# Pending installment joined with its loan and the loan's customer
PENDING_INSTALLMENT_SELECT = (
    "id, loan_id, installment_number, amount_due, due_date, status, "
    "loans(id, user_id, users(id, full_name, email, phone_number))"
)


class SupabaseRepository:
    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    async def _execute(self, query, action: str) -> List[Dict[str, Any]]:
        try:
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.error(f"Supabase error while trying to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}") from e
        return response.data or []


def flatten_pending_installment(row: Dict[str, Any]) -> Dict[str, Any]:
    """Collapse the joined installment/loan/user row into LoanPayment fields."""
    loan = row.get("loans") or {}
    user = loan.get("users") or {}
    return {
        "installment_id": row.get("id"),
        "loan_id": row.get("loan_id") or loan.get("id"),
        "installment_number": row.get("installment_number") or 1,
        "customer_id": user.get("id") or loan.get("user_id"),
        "customer_name": user.get("full_name") or user.get("name"),
        "customer_email": user.get("email"),
        "customer_phone": user.get("phone_number") or user.get("phone"),
        "amount_due": row.get("amount_due"),
        "due_date": row.get("due_date"),
    }


class InstallmentRepository(SupabaseRepository):
    table = "installments"

    async def create_batch(self, loan_id: str, installments: Sequence[Installment]) -> List[Dict[str, Any]]:
        """Insert the whole schedule in one request; PostgREST applies it atomically."""
        records = []
        for installment in installments:
            record = installment.to_record()
            record["loan_id"] = loan_id
            records.append(record)
        rows = await self._execute(
            self.client.table(self.table).insert(records),
            f"create {len(records)} installments for loan {loan_id}",
        )
        logger.info(f"Created {len(rows)} installments for loan {loan_id}")
        return rows

    async def find_pending(self) -> List[Dict[str, Any]]:
        rows = await self._execute(
            self.client.table(self.table)
            .select(PENDING_INSTALLMENT_SELECT)
            .eq("status", "pending")
            .order("due_date"),
            "fetch pending installments",
        )
        return [flatten_pending_installment(row) for row in rows]

    async def mark_deleted(self, loan_id: str) -> int:
        rows = await self._execute(
            self.client.table(self.table).delete().eq("loan_id", loan_id),
            f"delete installments for loan {loan_id}",
        )
        logger.info(f"Deleted {len(rows)} installments for loan {loan_id}")
        return len(rows)


def _to_rules(rows: List[Dict[str, Any]]) -> List[ReminderSchedule]:
    rules = []
    for row in rows:
        try:
            rules.append(ReminderSchedule.from_record(row))
        except MalformedRecordWarning as w:
            logger.warning(str(w))
    return rules


class ReminderScheduleRepository(SupabaseRepository):
    table = "reminder_schedules"

    async def find_enabled(self) -> List[ReminderSchedule]:
        rows = await self._execute(
            self.client.table(self.table)
            .select("*")
            .eq("is_enabled", True)
            .order("priority", desc=True),
            "fetch enabled reminder schedules",
        )
        return _to_rules(rows)

    async def find_all(self) -> List[ReminderSchedule]:
        rows = await self._execute(
            self.client.table(self.table).select("*").order("priority", desc=True),
            "fetch reminder schedules",
        )
        return _to_rules(rows)

    async def seed_defaults(self) -> int:
        """Insert the default schedules when the table is empty; returns how many were inserted."""
        existing = await self._execute(
            self.client.table(self.table).select("id").limit(1),
            "check existing reminder schedules",
        )
        if existing:
            logger.info("Reminder schedules already present, skipping seed")
            return 0
        rows = await self._execute(
            self.client.table(self.table).insert(default_reminder_records()),
            "seed default reminder schedules",
        )
        logger.info(f"Seeded {len(rows)} default reminder schedules")
        return len(rows)


class TemplateRepository(SupabaseRepository):
    table = "notification_templates"

    async def find_active(self) -> List[Dict[str, Any]]:
        return await self._execute(
            self.client.table(self.table).select("*").eq("is_active", True),
            "fetch notification templates",
        )


class LoanRepository(SupabaseRepository):
    applications_table = "loan_applications"
    loans_table = "loans"

    async def get_application(self, application_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._execute(
            self.client.table(self.applications_table).select("*").eq("id", application_id).limit(1),
            f"fetch loan application {application_id}",
        )
        return rows[0] if rows else None

    async def create_loan(self, record: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._execute(
            self.client.table(self.loans_table).insert(record),
            f"create loan for application {record.get('application_id')}",
        )
        if not rows:
            raise PersistenceError("Loan insert returned no row")
        return rows[0]

    async def delete_loan(self, loan_id: str) -> None:
        await self._execute(
            self.client.table(self.loans_table).delete().eq("id", loan_id),
            f"delete loan {loan_id}",
        )

    async def update_application_status(self, application_id: str, status: str,
                                        updated_at: Optional[str] = None) -> None:
        payload = {"status": status}
        if updated_at:
            payload["updated_at"] = updated_at
        await self._execute(
            self.client.table(self.applications_table).update(payload).eq("id", application_id),
            f"set application {application_id} status to {status}",
        )
