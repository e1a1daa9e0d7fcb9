"""Shared router dependencies and response builders."""

from collections.abc import AsyncIterator
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ftms.database import get_db
from ftms.models.loan import ShortageLoan, LoanInstallment
from ftms.repository import RevenueStore
from ftms.schemas import (
    AttachmentResponse, InstallmentResponse, LoanInstallmentResponse, LoanResponse,
    PaymentResponse, RevenueDetailResponse, RevenueResponse,
)
from ftms.services.revenue_service import LoanView, RevenueResult


async def get_store(db: AsyncSession = Depends(get_db)) -> AsyncIterator[RevenueStore]:
    yield RevenueStore(db)


def loan_response(
    loan: ShortageLoan, installments: Optional[list[LoanInstallment]] = None
) -> LoanResponse:
    return LoanResponse.model_validate(loan).model_copy(update={
        "installments": [LoanInstallmentResponse.model_validate(i) for i in (installments or [])],
    })


def _revenue_fields(result: RevenueResult) -> dict:
    revenue = result.revenue
    return dict(
        id=revenue.id,
        revenue_code=revenue.revenue_code,
        assignment_id=revenue.assignment_id,
        bus_trip_id=revenue.bus_trip_id,
        category_id=revenue.category_id,
        category_name=result.category.name if result.category else None,
        total_amount=revenue.total_amount,
        collection_date=revenue.collection_date,
        payment_method_id=revenue.payment_method_id,
        payment_method_name=result.payment_method.name if result.payment_method else None,
        payment_status_id=revenue.payment_status_id,
        payment_status_name=result.payment_status.name if result.payment_status else None,
        is_receivable=revenue.is_receivable,
        due_date=revenue.due_date,
        payer_name=revenue.payer_name,
        interest_rate=revenue.interest_rate,
        outstanding_balance=revenue.outstanding_balance,
        remarks=revenue.remarks,
        created_by=revenue.created_by,
        created_at=revenue.created_at,
        updated_at=revenue.updated_at,
    )


def revenue_summary(result: RevenueResult) -> RevenueResponse:
    return RevenueResponse(**_revenue_fields(result))


def revenue_detail(result: RevenueResult) -> RevenueDetailResponse:
    installments = []
    for inst in result.installments:
        item = InstallmentResponse.model_validate(inst)
        installments.append(item.model_copy(update={
            "status": result.installment_display_status.get(inst.id, inst.status),
        }))
    return RevenueDetailResponse(
        **_revenue_fields(result),
        boundary_loss=result.boundary_loss,
        installments=installments,
        payments=[PaymentResponse.model_validate(p) for p in result.payments],
        loans=[_loan_view(view) for view in result.loans],
        attachments=[AttachmentResponse.model_validate(a) for a in result.attachments],
        warnings=result.warnings,
    )


def _loan_view(view: LoanView) -> LoanResponse:
    return loan_response(view.loan, view.installments)
