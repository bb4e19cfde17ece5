import pytest
from datetime import date
from decimal import Decimal

from credilife.workers.loan_approval_worker import LoanApprovalWorker

from tests.conftest import FakeInstallmentRepository, FakeLoanRepository


def _application(**overrides):
    record = {
        "id": "app-1",
        "user_id": "cust-1",
        "status": "pending",
        "principal_amount": "2500",
        "interest_amount": "500",
        "closing_fees": "125",
        "tenure": 3,
        "repayment_type": "monthly",
    }
    record.update(overrides)
    return record


@pytest.mark.asyncio
async def test_approval_creates_loan_and_schedule(clock):
    loans = FakeLoanRepository(_application())
    installments = FakeInstallmentRepository()
    worker = LoanApprovalWorker(loans, installments, clock=clock)

    result = await worker.approve("app-1", start_date=date(2024, 7, 1))

    assert result.success
    assert result.installments_created == 3
    loan = loans.loans[result.loan_id]
    assert loan["end_date"] == "2024-10-01"
    assert loan["total_repayment"] == 3125.0
    batch = installments.batches[result.loan_id]
    assert [i.amount_due for i in batch] == [Decimal("1041.67"), Decimal("1041.67"), Decimal("1041.66")]
    assert loans.status_updates == [("app-1", "approved")]


@pytest.mark.asyncio
async def test_start_date_defaults_to_today(clock):
    loans = FakeLoanRepository(_application(tenure=1))
    installments = FakeInstallmentRepository()

    result = await LoanApprovalWorker(loans, installments, clock=clock).approve("app-1")

    assert installments.batches[result.loan_id][0].due_date == date(2024, 10, 24)


@pytest.mark.asyncio
async def test_biweekly_tenure_is_converted_to_installments(clock):
    loans = FakeLoanRepository(_application(repayment_type="bi-weekly", tenure=2))
    installments = FakeInstallmentRepository()

    result = await LoanApprovalWorker(loans, installments, clock=clock).approve("app-1")

    assert result.installments_created == 4


@pytest.mark.asyncio
async def test_invalid_terms_persist_nothing(clock):
    loans = FakeLoanRepository(_application(principal_amount="0"))
    installments = FakeInstallmentRepository()

    result = await LoanApprovalWorker(loans, installments, clock=clock).approve("app-1")

    assert result.success is False
    assert loans.loans == {}
    assert installments.batches == {}
    assert loans.status_updates == []


@pytest.mark.asyncio
async def test_failed_installment_batch_rolls_back_loan(clock):
    loans = FakeLoanRepository(_application())
    installments = FakeInstallmentRepository(fail_create=True)

    result = await LoanApprovalWorker(loans, installments, clock=clock).approve("app-1")

    assert result.success is False
    assert result.rolled_back is True
    assert result.loan_id is None
    assert loans.loans == {}
    assert loans.status_updates == []


@pytest.mark.asyncio
async def test_failed_status_update_rolls_back_everything(clock):
    loans = FakeLoanRepository(_application(), fail_status=True)
    installments = FakeInstallmentRepository()

    result = await LoanApprovalWorker(loans, installments, clock=clock).approve("app-1")

    assert result.success is False
    assert result.rolled_back is True
    assert loans.loans == {}
    assert installments.batches == {}
    assert loans.status_updates == [("app-1", "pending")]


@pytest.mark.asyncio
async def test_incomplete_rollback_is_reported(clock):
    loans = FakeLoanRepository(_application(), fail_delete=True)
    installments = FakeInstallmentRepository(fail_create=True)

    result = await LoanApprovalWorker(loans, installments, clock=clock).approve("app-1")

    assert result.success is False
    assert result.rolled_back is False
    assert "manual cleanup" in result.message


@pytest.mark.asyncio
async def test_unknown_and_already_approved_applications(clock):
    worker = LoanApprovalWorker(FakeLoanRepository(_application(status="approved")), FakeInstallmentRepository(),
                                clock=clock)

    missing = await worker.approve("app-404")
    approved = await worker.approve("app-1")

    assert missing.error == "not_found"
    assert approved.error == "already_approved"
