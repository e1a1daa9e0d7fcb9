"""Shortage loan endpoints: listing and installment repayment."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ftms.api.deps import get_store, loan_response
from ftms.repository import RevenueStore
from ftms.schemas import (
    LoanInstallmentResponse, LoanPaymentIn, LoanPaymentResponse, LoanResponse,
)
from ftms.services import revenue_service, shortage_loans

router = APIRouter()


@router.get("", response_model=list[LoanResponse])
async def list_loans(
    revenue_code: Optional[str] = Query(None),
    store: RevenueStore = Depends(get_store),
):
    revenue_id = None
    if revenue_code:
        revenue_id = await revenue_service.resolve_revenue_id(store, revenue_code)
    loans = await shortage_loans.list_loans(store, revenue_id)
    return [loan_response(loan, await store.list_loan_installments(loan.id)) for loan in loans]


@router.put("/installments/{installment_id}/pay", response_model=LoanPaymentResponse)
async def pay_loan_installment(
    installment_id: int,
    data: LoanPaymentIn,
    store: RevenueStore = Depends(get_store),
):
    result = await shortage_loans.record_loan_payment(
        store,
        installment_id,
        data.amount,
        data.payment_method_id,
        paid_date=data.paid_date,
        reference_number=data.reference_number,
        remarks=data.remarks,
    )
    await store.commit()
    return LoanPaymentResponse(
        loan=loan_response(result.loan, await store.list_loan_installments(result.loan.id)),
        installment=LoanInstallmentResponse.model_validate(result.installment),
        payment_id=result.payment.id,
        amount=result.payment.amount,
    )
