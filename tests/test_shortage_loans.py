"""Tests for shortage loan upsert, clamping and repayment."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from conftest import BOUNDARY_ID, CASH_ID, PENDING_ID, PERCENTAGE_ID, set_config
from ftms.models.loan import EmployeeRole, LoanStatus
from ftms.models.revenue import InstallmentStatus, RevenueRecord
from ftms.services import shortage_loans
from ftms.services.errors import NotFoundError, ValidationError
from ftms.services.revenue_calc import EmployeeShare

D = Decimal


def _boundary_revenue(store, total="1800", *, category_id=BOUNDARY_ID, assignment_id="ASG-001"):
    record = RevenueRecord(
        revenue_code=f"REV-{len(store.revenues) + 1:05d}",
        assignment_id=assignment_id,
        bus_trip_id="BT-001" if assignment_id else None,
        category_id=category_id,
        total_amount=D(total),
        collection_date=datetime.now(timezone.utc) - timedelta(days=1),
        payment_method_id=CASH_ID,
        payment_status_id=PENDING_ID,
        is_receivable=False,
        outstanding_balance=D(total),
        remarks="Boundary remittance",
        is_deleted=False,
    )
    return store._insert("revenues", record)


def _loans_by_role(loans):
    return {loan.employee_role: loan for loan in loans}


@pytest.fixture
def boundary_revenue(store, boundary_trip):
    set_config(store)
    return _boundary_revenue(store)


# ═══════════════════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════════════════

class TestLoadConfig:
    @pytest.mark.asyncio
    async def test_falls_back_to_settings(self, store):
        config = await shortage_loans.load_config(store)
        assert config.is_default is True
        assert config.driver_share_percentage + config.conductor_share_percentage == D("100")

    @pytest.mark.asyncio
    async def test_reads_the_configuration_row(self, store):
        set_config(store, driver="60", conductor="40", frequency="monthly", payments=2)
        config = await shortage_loans.load_config(store)
        assert config.is_default is False
        assert config.driver_share_percentage == D("60")
        assert config.default_frequency == "monthly"
        assert config.default_number_of_payments == 2


# ═══════════════════════════════════════════════════════════════════════════
# Upsert
# ═══════════════════════════════════════════════════════════════════════════

class TestUpsert:
    @pytest.mark.asyncio
    async def test_shortfall_splits_into_two_loans(self, store, boundary_revenue):
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        assert result.applied is True
        assert result.shortfall == D("200")

        loans = _loans_by_role(result.loans)
        driver = loans[EmployeeRole.DRIVER]
        conductor = loans[EmployeeRole.CONDUCTOR]
        assert driver.amount == D("100.00")
        assert conductor.amount == D("100.00")
        assert driver.employee_key == "EMP-100"
        assert conductor.employee_name == "Pedro Santos"
        assert driver.balance == D("100.00")
        assert driver.status == LoanStatus.PENDING

        installments = await store.list_loan_installments(driver.id)
        assert [i.amount_due for i in installments] == [D("33.33"), D("33.33"), D("33.34")]
        assert driver.due_date == installments[-1].due_date

    @pytest.mark.asyncio
    async def test_repeat_upsert_reuses_rows(self, store, boundary_revenue):
        first = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        second = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        assert sorted(l.id for l in first.loans) == sorted(l.id for l in second.loans)
        assert len(store.loans) == 2
        assert len(store.loan_installments) == 6

    @pytest.mark.asyncio
    async def test_amount_change_resizes_loans(self, store, boundary_revenue):
        await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        boundary_revenue.total_amount = D("1900")
        boundary_revenue.outstanding_balance = D("1900")
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1900"
        )
        assert {l.amount for l in result.loans} == {D("50.00")}
        assert len(store.loans) == 2

    @pytest.mark.asyncio
    async def test_no_shortfall_removes_unpaid_loans(self, store, boundary_revenue):
        await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        boundary_revenue.total_amount = D("2000")
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "2000"
        )
        assert result.shortfall == D("0")
        assert result.loans == []
        assert store.loan_installments == {}

    @pytest.mark.asyncio
    async def test_uneven_config_split(self, store, boundary_trip):
        set_config(store, driver="60", conductor="40")
        revenue = _boundary_revenue(store)
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, revenue.id, "2000", "2200", "1800"
        )
        loans = _loans_by_role(result.loans)
        assert loans[EmployeeRole.DRIVER].amount == D("120.00")
        assert loans[EmployeeRole.CONDUCTOR].amount == D("80.00")

    @pytest.mark.asyncio
    async def test_additional_employee_gets_a_loan(self, store, boundary_revenue):
        extra = [EmployeeShare(role="other", amount=D("40"), name="Mario Reyes")]
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800", additional_employees=extra
        )
        loans = _loans_by_role(result.loans)
        assert loans[EmployeeRole.OTHER].amount == D("40.00")
        assert loans[EmployeeRole.OTHER].employee_key == "mario-reyes"
        assert loans[EmployeeRole.DRIVER].amount == D("80.00")
        assert sum(l.amount for l in result.loans) == D("200.00")

    @pytest.mark.asyncio
    async def test_non_boundary_revenue_is_skipped(self, store, boundary_trip):
        revenue = _boundary_revenue(store, category_id=PERCENTAGE_ID)
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, revenue.id, "2000", "2200", "1800"
        )
        assert result.applied is False
        assert store.loans == {}

    @pytest.mark.asyncio
    async def test_principal_change_keeps_paid_installments(self, store, boundary_revenue):
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        driver = _loans_by_role(result.loans)[EmployeeRole.DRIVER]
        first = (await store.list_loan_installments(driver.id))[0]
        await shortage_loans.record_loan_payment(store, first.id, "33.33", CASH_ID)

        boundary_revenue.total_amount = D("1900")
        boundary_revenue.outstanding_balance = D("1900")
        await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1900"
        )

        installments = await store.list_loan_installments(driver.id)
        assert installments[0].id == first.id
        assert installments[0].status == InstallmentStatus.PAID
        assert [i.installment_number for i in installments] == [1, 2, 3]
        assert sum(i.amount_due for i in installments) == D("50.00")
        assert driver.amount == D("50.00")
        assert driver.balance == D("16.67")
        assert driver.status == LoanStatus.PARTIALLY_PAID


# ═══════════════════════════════════════════════════════════════════════════
# Clamp to outstanding
# ═══════════════════════════════════════════════════════════════════════════

class TestLoanCap:
    @pytest.mark.asyncio
    async def test_loans_scale_to_outstanding(self, store, boundary_revenue):
        await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        boundary_revenue.outstanding_balance = D("100")
        loans = await shortage_loans.enforce_loan_cap(store, boundary_revenue.id)
        assert {l.amount for l in loans} == {D("50.00")}
        assert sum(l.amount for l in loans) <= boundary_revenue.outstanding_balance

    @pytest.mark.asyncio
    async def test_nothing_outstanding_removes_loans(self, store, boundary_revenue):
        await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        boundary_revenue.outstanding_balance = D("0")
        loans = await shortage_loans.enforce_loan_cap(store, boundary_revenue.id)
        assert loans == []
        assert store.loans == {}

    @pytest.mark.asyncio
    async def test_loans_that_fit_are_untouched(self, store, boundary_revenue):
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        before = {l.id: l.amount for l in result.loans}
        loans = await shortage_loans.enforce_loan_cap(store, boundary_revenue.id)
        assert {l.id: l.amount for l in loans} == before


# ═══════════════════════════════════════════════════════════════════════════
# Explicit generation and preview
# ═══════════════════════════════════════════════════════════════════════════

class TestGenerateAndPreview:
    @pytest.mark.asyncio
    async def test_generate_uses_assignment_data(self, store, boundary_revenue):
        result = await shortage_loans.generate_loan(store, boundary_revenue.id)
        assert result.shortfall == D("200")
        assert len(result.loans) == 2

    @pytest.mark.asyncio
    async def test_generate_rejects_non_boundary(self, store, boundary_trip):
        revenue = _boundary_revenue(store, category_id=PERCENTAGE_ID)
        with pytest.raises(ValidationError) as exc:
            await shortage_loans.generate_loan(store, revenue.id)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_generate_requires_assignment(self, store):
        revenue = _boundary_revenue(store, assignment_id=None)
        with pytest.raises(ValidationError, match="assignment"):
            await shortage_loans.generate_loan(store, revenue.id)

    @pytest.mark.asyncio
    async def test_generate_unknown_revenue(self, store):
        with pytest.raises(NotFoundError):
            await shortage_loans.generate_loan(store, 4040)

    @pytest.mark.asyncio
    async def test_preview_uses_config_split(self, store):
        set_config(store, driver="70", conductor="30")
        split = await shortage_loans.preview_shortage_split(store, "2000", "1900")
        assert split.driver == D("70.00")
        assert split.conductor == D("30.00")

    @pytest.mark.asyncio
    async def test_preview_rejects_shares_that_do_not_add_up(self, store):
        with pytest.raises(ValidationError, match="must add up"):
            await shortage_loans.preview_shortage_split(
                store, "2000", "1800", driver_share="150", conductor_share="10"
            )

    @pytest.mark.asyncio
    async def test_preview_accepts_manual_shares(self, store):
        split = await shortage_loans.preview_shortage_split(
            store, "2000", "1800", driver_share="150", conductor_share="50"
        )
        assert split.driver == D("150")


# ═══════════════════════════════════════════════════════════════════════════
# Repayment
# ═══════════════════════════════════════════════════════════════════════════

class TestLoanPayment:
    @pytest_asyncio.fixture
    async def driver_loan(self, store, boundary_revenue):
        result = await shortage_loans.upsert_boundary_loan_for_revenue(
            store, boundary_revenue.id, "2000", "2200", "1800"
        )
        return _loans_by_role(result.loans)[EmployeeRole.DRIVER]

    @pytest.mark.asyncio
    async def test_payment_updates_installment_and_loan(self, store, driver_loan):
        first = (await store.list_loan_installments(driver_loan.id))[0]
        result = await shortage_loans.record_loan_payment(store, first.id, "20", CASH_ID)
        assert result.installment.status == InstallmentStatus.PARTIAL
        assert driver_loan.paid_amount == D("20")
        assert driver_loan.balance == D("80.00")
        assert driver_loan.status == LoanStatus.PARTIALLY_PAID
        assert driver_loan.last_payment_date is not None

    @pytest.mark.asyncio
    async def test_full_repayment_marks_loan_paid(self, store, driver_loan):
        for inst in await store.list_loan_installments(driver_loan.id):
            await shortage_loans.record_loan_payment(store, inst.id, inst.amount_due, CASH_ID)
        assert driver_loan.balance == D("0")
        assert driver_loan.status == LoanStatus.PAID

    @pytest.mark.asyncio
    async def test_payment_above_balance_is_rejected(self, store, driver_loan):
        first = (await store.list_loan_installments(driver_loan.id))[0]
        with pytest.raises(ValidationError, match="exceeds loan balance"):
            await shortage_loans.record_loan_payment(store, first.id, "100.01", CASH_ID)
        assert store.loan_payments == {}

    @pytest.mark.asyncio
    async def test_invalid_method_and_amount(self, store, driver_loan):
        first = (await store.list_loan_installments(driver_loan.id))[0]
        with pytest.raises(ValidationError, match="payment_method_id"):
            await shortage_loans.record_loan_payment(store, first.id, "10", 999)
        with pytest.raises(ValidationError, match="greater than 0"):
            await shortage_loans.record_loan_payment(store, first.id, "0", CASH_ID)

    @pytest.mark.asyncio
    async def test_unknown_installment(self, store):
        with pytest.raises(NotFoundError):
            await shortage_loans.record_loan_payment(store, 777, "10", CASH_ID)
