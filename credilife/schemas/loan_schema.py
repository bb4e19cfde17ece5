from pydantic import BaseModel, Field, ValidationError, field_validator
from enum import Enum
from typing import List, Dict, Any, Optional
from datetime import date, datetime
from decimal import Decimal

from credilife.core.exceptions import InvalidLoanTermsError


class RepaymentFrequencyEnum(str, Enum):
    monthly = "monthly"
    biweekly = "bi-weekly"
    weekly = "weekly"
    daily = "daily"


class InstallmentStatusEnum(str, Enum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"
    settled = "settled"


class ApplicationStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    declined = "declined"


class LoanTerms(BaseModel):
    """Inputs to schedule generation. Semantic checks live in the generator."""
    principal: Decimal = Field(..., description="Amount disbursed on the start date")
    interest: Decimal = Field(Decimal("0"), description="Total interest over the whole term (not a rate)")
    closing_fee: Decimal = Field(Decimal("0"), description="Closing fee folded into the repayment total")
    tenure: int = Field(..., description="Number of installments")
    frequency: RepaymentFrequencyEnum = Field(RepaymentFrequencyEnum.monthly, description="Repayment frequency")
    start_date: date = Field(..., description="Disbursement date; installment 1 falls one period later")

    @property
    def total_repayment(self) -> Decimal:
        return self.principal + self.interest + self.closing_fee

    @classmethod
    def from_application(cls, record: Dict[str, Any], start_date: date) -> "LoanTerms":
        """
        Build terms from a loosely-typed loan application row.

        Only principal, interest, closing fee, tenure (in months) and
        repayment type are read. Tenure months are converted to an
        installment count for the repayment type.
        """
        from credilife.services.installment_service import installments_for_tenure

        principal = record.get("principal_amount") or record.get("requested_amount")
        tenure_months = record.get("tenure")
        frequency = record.get("repayment_type") or RepaymentFrequencyEnum.monthly.value

        if principal in (None, ""):
            raise InvalidLoanTermsError("Application has no principal_amount")
        if tenure_months in (None, ""):
            raise InvalidLoanTermsError("Application has no tenure")

        try:
            frequency_enum = RepaymentFrequencyEnum(frequency)
            tenure = installments_for_tenure(int(tenure_months), frequency_enum)
            return cls(
                principal=Decimal(str(principal)),
                interest=Decimal(str(record.get("interest_amount") or 0)),
                closing_fee=Decimal(str(record.get("closing_fees") or 0)),
                tenure=tenure,
                frequency=frequency_enum,
                start_date=start_date,
            )
        except InvalidLoanTermsError:
            raise
        except (ValueError, ArithmeticError, ValidationError) as e:
            raise InvalidLoanTermsError(f"Invalid loan terms on application: {e}") from e


class Installment(BaseModel):
    loan_id: Optional[str] = Field(None, description="Owning loan; filled in when the batch is persisted")
    installment_number: int = Field(..., ge=1)
    due_date: date
    amount_due: Decimal
    principal_portion: Decimal = Field(..., description="Share of the principal repaid by this installment")
    charges_portion: Decimal = Field(..., description="Interest and closing fee share of this installment")
    amount_paid: Decimal = Decimal("0")
    status: InstallmentStatusEnum = InstallmentStatusEnum.pending
    payment_verified: bool = False
    paid_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        """Row shape for the `installments` table."""
        return {
            "loan_id": self.loan_id,
            "installment_number": self.installment_number,
            "due_date": self.due_date.isoformat(),
            "amount_due": float(self.amount_due),
            "amount_paid": float(self.amount_paid),
            "status": self.status.value,
            "payment_verified": self.payment_verified,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class LoanQuoteRequest(BaseModel):
    principal: Decimal = Field(..., gt=0)
    tenure_months: int = Field(..., gt=0)
    frequency: RepaymentFrequencyEnum = RepaymentFrequencyEnum.monthly
    monthly_rate: Decimal = Field(Decimal("0.20"), ge=0, description="Flat monthly interest rate, 0.20 = 20%")
    closing_fee_rate: Decimal = Field(Decimal("0.05"), ge=0, description="Closing fee as a share of principal")


class LoanQuote(BaseModel):
    principal: Decimal
    tenure_months: int
    frequency: RepaymentFrequencyEnum
    interest_rate_monthly: str
    closing_fee: Decimal
    total_interest: Decimal
    total_repayment: Decimal
    installments: int
    installment_amount: Decimal


class SchedulePreviewResponse(BaseModel):
    total_repayment: Decimal
    installments: List[Installment]


class ApprovalResult(BaseModel):
    success: bool
    message: str
    application_id: str
    loan_id: Optional[str] = None
    installments_created: int = 0
    error: Optional[str] = None
    rolled_back: bool = False


class ApplicationRecord(BaseModel):
    """Narrow view of a `loan_applications` row used by the approval flow."""
    id: str
    user_id: Optional[str] = None
    status: str = ApplicationStatusEnum.pending.value

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if value is not None else value
