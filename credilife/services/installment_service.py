"""
Repayment schedule generation.

The generator is side-effect free: it turns `LoanTerms` into an ordered list
of pending installments. Persisting the batch (and rolling it back) is the
approval worker's job.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from credilife.core.exceptions import InvalidLoanTermsError
from credilife.schemas.loan_schema import (
    Installment,
    LoanQuote,
    LoanTerms,
    RepaymentFrequencyEnum,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Installments per month of tenure for each repayment type
INSTALLMENTS_PER_MONTH = {
    RepaymentFrequencyEnum.monthly: 1,
    RepaymentFrequencyEnum.biweekly: 2,
    RepaymentFrequencyEnum.weekly: 4,
    RepaymentFrequencyEnum.daily: 30,
}

DEFAULT_MONTHLY_RATE = Decimal("0.20")
DEFAULT_CLOSING_FEE_RATE = Decimal("0.05")


def due_date_for(start_date: date, frequency: RepaymentFrequencyEnum, period: int) -> date:
    """Due date of installment `period` (1-indexed), always measured from the start date."""
    if frequency == RepaymentFrequencyEnum.monthly:
        return start_date + relativedelta(months=period)
    if frequency == RepaymentFrequencyEnum.biweekly:
        return start_date + timedelta(days=14 * period)
    if frequency == RepaymentFrequencyEnum.weekly:
        return start_date + timedelta(days=7 * period)
    if frequency == RepaymentFrequencyEnum.daily:
        return start_date + timedelta(days=period)
    raise InvalidLoanTermsError(f"Unsupported repayment frequency: {frequency}")


def split_amount(total: Decimal, parts: int, rounding: str = ROUND_HALF_UP) -> List[Decimal]:
    """
    Split `total` into `parts` cent amounts that add up to `total` exactly.

    Every part gets total/parts quantized with `rounding`; the last part
    absorbs the remainder. Half-up rounding can over-allocate tiny totals
    so that the last part would go negative; round-down is used then.
    """
    total = total.quantize(CENT, rounding=ROUND_HALF_UP)
    base = (total / parts).quantize(CENT, rounding=rounding)
    last = total - base * (parts - 1)
    if last < 0 and rounding != ROUND_DOWN:
        return split_amount(total, parts, rounding=ROUND_DOWN)
    return [base] * (parts - 1) + [last]


def _validate_terms(terms: LoanTerms) -> None:
    if not all(amount.is_finite() for amount in (terms.principal, terms.interest, terms.closing_fee)):
        raise InvalidLoanTermsError("Loan amounts must be finite numbers")
    if terms.principal <= 0:
        raise InvalidLoanTermsError(f"Principal must be greater than zero, got {terms.principal}")
    if terms.interest < 0:
        raise InvalidLoanTermsError(f"Interest cannot be negative, got {terms.interest}")
    if terms.closing_fee < 0:
        raise InvalidLoanTermsError(f"Closing fee cannot be negative, got {terms.closing_fee}")
    if terms.tenure < 1:
        raise InvalidLoanTermsError(f"Tenure must be at least 1 installment, got {terms.tenure}")
    if not isinstance(terms.start_date, date):
        raise InvalidLoanTermsError(f"Start date is not a valid date: {terms.start_date!r}")


def generate_installments(
    terms: LoanTerms,
    loan_id: Optional[str] = None,
    rounding: str = ROUND_HALF_UP,
) -> List[Installment]:
    """Build the full repayment schedule for `terms`, ordered by installment number."""
    _validate_terms(terms)

    amounts = split_amount(terms.total_repayment, terms.tenure, rounding=rounding)
    principal_parts = split_amount(terms.principal, terms.tenure, rounding=rounding)

    installments = []
    for number, (amount_due, principal_portion) in enumerate(zip(amounts, principal_parts), start=1):
        installments.append(
            Installment(
                loan_id=loan_id,
                installment_number=number,
                due_date=due_date_for(terms.start_date, terms.frequency, number),
                amount_due=amount_due,
                principal_portion=principal_portion,
                charges_portion=amount_due - principal_portion,
            )
        )

    logger.debug(
        f"Generated {len(installments)} {terms.frequency.value} installments "
        f"totalling {terms.total_repayment} from {terms.start_date}"
    )
    return installments


def installments_for_tenure(tenure_months: int, frequency: RepaymentFrequencyEnum) -> int:
    """Number of installments a tenure in months produces for a repayment type."""
    if tenure_months < 1:
        raise InvalidLoanTermsError(f"Tenure must be at least one month, got {tenure_months}")
    try:
        return tenure_months * INSTALLMENTS_PER_MONTH[RepaymentFrequencyEnum(frequency)]
    except (KeyError, ValueError) as e:
        raise InvalidLoanTermsError(f"Invalid repayment frequency: {frequency}") from e


def calculate_loan_quote(
    principal: Decimal,
    tenure_months: int,
    frequency: RepaymentFrequencyEnum,
    monthly_rate: Decimal = DEFAULT_MONTHLY_RATE,
    closing_fee_rate: Decimal = DEFAULT_CLOSING_FEE_RATE,
) -> LoanQuote:
    """
    Quote a flat-rate loan.

    closing fee = principal * closing_fee_rate
    total interest = principal * monthly_rate * tenure_months
    total repayment = principal + total interest + closing fee
    """
    principal = Decimal(principal)
    monthly_rate = Decimal(monthly_rate)
    closing_fee_rate = Decimal(closing_fee_rate)
    if principal <= 0:
        raise InvalidLoanTermsError(f"Principal must be greater than zero, got {principal}")

    count = installments_for_tenure(tenure_months, frequency)
    closing_fee = (principal * closing_fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    total_interest = (principal * monthly_rate * tenure_months).quantize(CENT, rounding=ROUND_HALF_UP)
    total_repayment = principal.quantize(CENT, rounding=ROUND_HALF_UP) + total_interest + closing_fee

    return LoanQuote(
        principal=principal.quantize(CENT, rounding=ROUND_HALF_UP),
        tenure_months=tenure_months,
        frequency=RepaymentFrequencyEnum(frequency),
        interest_rate_monthly=f"{(monthly_rate * 100).quantize(CENT)}%",
        closing_fee=closing_fee,
        total_interest=total_interest,
        total_repayment=total_repayment,
        installments=count,
        installment_amount=(total_repayment / count).quantize(CENT, rounding=ROUND_HALF_UP),
    )
