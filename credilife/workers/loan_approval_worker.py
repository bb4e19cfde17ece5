import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from credilife.core.clock import SystemClock
from credilife.core.exceptions import InvalidLoanTermsError, PersistenceError
from credilife.database.repositories import InstallmentRepository, LoanRepository
from credilife.schemas.loan_schema import (
    ApplicationRecord,
    ApplicationStatusEnum,
    ApprovalResult,
    Installment,
    LoanTerms,
)
from credilife.services.installment_service import generate_installments

logger = logging.getLogger(__name__)

INVALID_TERMS_MESSAGE = "Invalid loan terms"


def build_loan_record(application: ApplicationRecord, raw: Dict[str, Any], terms: LoanTerms,
                      installments: List[Installment], now_iso: str) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "application_id": application.id,
        "user_id": application.user_id,
        "principal_amount": float(terms.principal),
        "interest_amount": float(terms.interest),
        "closing_fees": float(terms.closing_fee),
        "total_repayment": float(terms.total_repayment),
        "repayment_type": terms.frequency.value,
        "tenure": raw.get("tenure"),
        "start_date": terms.start_date.isoformat(),
        "end_date": installments[-1].due_date.isoformat(),
        "status": "running",
        "amount_paid": 0,
        "created_at": now_iso,
        "updated_at": now_iso,
    }


class LoanApprovalWorker:
    """
    Approves an application: creates the loan and its full installment schedule.

    The steps run in order (load application, build terms, generate the
    schedule, create the loan, insert the installment batch, mark the
    application approved). Nothing is written until the schedule has been
    generated. If a write fails, the writes already made are undone.
    """

    def __init__(self, loans: LoanRepository, installments: InstallmentRepository, clock=None):
        self.loans = loans
        self.installments = installments
        self.clock = clock or SystemClock()

    async def approve(self, application_id: str, start_date: Optional[date] = None) -> ApprovalResult:
        logger.info(f"Starting approval for loan application {application_id}")

        try:
            raw = await self.loans.get_application(application_id)
        except PersistenceError as e:
            return ApprovalResult(success=False, message="Could not load loan application",
                                  application_id=application_id, error=str(e))

        if raw is None:
            return ApprovalResult(success=False, message="Loan application not found",
                                  application_id=application_id, error="not_found")

        application = ApplicationRecord(
            id=raw.get("id") or application_id,
            user_id=raw.get("user_id"),
            status=raw.get("status") or ApplicationStatusEnum.pending.value,
        )
        if application.status == ApplicationStatusEnum.approved.value:
            return ApprovalResult(success=False, message="Loan application is already approved",
                                  application_id=application_id, error="already_approved")

        start_date = start_date or self.clock.today()
        try:
            terms = LoanTerms.from_application(raw, start_date)
            schedule = generate_installments(terms)
        except InvalidLoanTermsError as e:
            logger.warning(f"Application {application_id} has invalid loan terms: {e}")
            return ApprovalResult(success=False, message=INVALID_TERMS_MESSAGE,
                                  application_id=application_id, error=str(e))

        now_iso = self.clock.now().isoformat()
        loan_id = None
        batch_attempted = False
        status_attempted = False
        try:
            loan = await self.loans.create_loan(build_loan_record(application, raw, terms, schedule, now_iso))
            loan_id = str(loan.get("id"))

            batch_attempted = True
            await self.installments.create_batch(loan_id, schedule)

            status_attempted = True
            await self.loans.update_application_status(application_id, ApplicationStatusEnum.approved.value, now_iso)
        except PersistenceError as e:
            logger.error(f"Approval of application {application_id} failed, rolling back: {e}")
            rolled_back = await self._rollback(application, loan_id, batch_attempted, status_attempted)
            return ApprovalResult(
                success=False,
                message="Loan approval failed; no loan was created" if rolled_back
                else "Loan approval failed and rollback was incomplete; manual cleanup may be required",
                application_id=application_id,
                error=str(e),
                rolled_back=rolled_back,
            )

        logger.info(f"Approved application {application_id}: loan {loan_id} with {len(schedule)} installments")
        return ApprovalResult(
            success=True,
            message="Loan application approved and loan created successfully",
            application_id=application_id,
            loan_id=loan_id,
            installments_created=len(schedule),
        )

    async def _rollback(self, application: ApplicationRecord, loan_id: Optional[str],
                        batch_attempted: bool, status_attempted: bool) -> bool:
        """Undo the writes of a failed approval, latest first. Returns False if any undo step failed."""
        clean = True

        if status_attempted:
            try:
                await self.loans.update_application_status(application.id, application.status)
            except PersistenceError as e:
                logger.error(f"Rollback: could not restore status of application {application.id}: {e}")
                clean = False

        if loan_id and batch_attempted:
            try:
                await self.installments.mark_deleted(loan_id)
            except PersistenceError as e:
                logger.error(f"Rollback: could not delete installments of loan {loan_id}: {e}")
                clean = False

        if loan_id:
            try:
                await self.loans.delete_loan(loan_id)
            except PersistenceError as e:
                logger.error(f"Rollback: could not delete loan {loan_id}: {e}")
                clean = False

        if clean:
            logger.info(f"Rolled back approval of application {application.id}")
        return clean
