from fastapi import APIRouter, HTTPException, Depends
from fastapi import status
from fastapi.responses import JSONResponse

import logging

from credilife.core.dependencies import get_approval_worker
from credilife.core.exceptions import InvalidLoanTermsError
from credilife.schemas.loan_schema import (
    ApprovalResult,
    LoanQuote,
    LoanQuoteRequest,
    LoanTerms,
    SchedulePreviewResponse,
)
from credilife.services.installment_service import calculate_loan_quote, generate_installments
from credilife.workers.loan_approval_worker import INVALID_TERMS_MESSAGE, LoanApprovalWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/loans", tags=["Loans"])


# Returns the repayment schedule the given terms would produce, without saving it
@router.post("/schedule-preview", response_model=SchedulePreviewResponse)
async def preview_schedule(terms: LoanTerms):
    try:
        installments = generate_installments(terms)
    except InvalidLoanTermsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SchedulePreviewResponse(total_repayment=terms.total_repayment, installments=installments)


@router.post("/quote", response_model=LoanQuote)
async def quote_loan(request: LoanQuoteRequest):
    try:
        return calculate_loan_quote(
            request.principal,
            request.tenure_months,
            request.frequency,
            monthly_rate=request.monthly_rate,
            closing_fee_rate=request.closing_fee_rate,
        )
    except InvalidLoanTermsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# Approves an application, creating the loan and its installment schedule
@router.patch("/{application_id}/approve", response_model=ApprovalResult)
async def approve_loan_application(
    application_id: str,
    worker: LoanApprovalWorker = Depends(get_approval_worker),
):
    result = await worker.approve(application_id)
    if result.success:
        return result

    if result.error == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    if result.error == "already_approved":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)
    if result.message == INVALID_TERMS_MESSAGE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{result.message}: {result.error}")

    # Persistence failure: report whether the partial writes were undone
    logger.error(f"Approval of application {application_id} failed: {result.error}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=result.model_dump(mode="json"))
